import os
import re
import lzma
import shutil
import inspect
import pathlib
import subprocess
import typing
import tqdm

import pi_imager.pretty_print as pretty_print
from pi_imager.shell_executor import Shell_Executor
from pi_imager.timestamp_logger import Timestamp_Logger
from pi_imager.session_lock import Session_Lock
from pi_imager.file_downloader import File_Downloader
from pi_imager.exceptions import (
    Config_Not_Found_Error,
    Configuration_Error,
    Image_Preparation_Error,
    Low_Disk_Space_Error,
    Prerequisite_Missing_Error,
    Verification_Error,
)
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.chroot_session import Chroot_Session
from raspberrypi_support.package_manager import Package_Manager
from raspberrypi_support.hook_executor import Hook_Executor
from raspberrypi_support.raspberrypi_image_model import Hook_Spec, is_remote_reference


class RaspberryPi_Image_Builder:
    """
    Raspberry Pi OS image builder class
    """

    # Directories that have to exist in a usable root file system
    expected_dirs = ["bin", "etc", "home", "boot/firmware"]
    # Host tools that are always needed
    required_tools = ["sdm", "losetup", "partprobe", "mount", "umount", "chroot"]
    step_log_name = ".build_steps.csv"
    build_log_name = "build.log"

    def __init__(
        self,
        session: Build_Session,
        shell_executor: Shell_Executor = None,
        host_resolv_conf: pathlib.Path = pathlib.Path("/etc/resolv.conf"),
    ):
        self._session = session
        self.shell_executor = shell_executor if shell_executor is not None else Shell_Executor()

        # The password must never appear in any output
        pretty_print.register_secret(session.password)

        self._build_log = Timestamp_Logger(log_file=session.work_dir / self.step_log_name)
        self._session_lock = Session_Lock(work_dir=session.work_dir)
        self.chroot_session = Chroot_Session(
            session=session, shell_executor=self.shell_executor, host_resolv_conf=host_resolv_conf
        )
        self.package_manager = Package_Manager(session=session, shell_executor=self.shell_executor)
        self.hook_executor = Hook_Executor(session=session, shell_executor=self.shell_executor)

        # Stages that were not executed, reported in the summary
        self.skipped_stages = []

    @property
    def session(self) -> Build_Session:
        return self._session

    @property
    def setup_steps(self) -> typing.List[typing.Callable[[], None]]:
        # Steps that are executed before the image is mounted
        return [self.validate_inputs, self.setup_workdir, self.prepare_image, self.run_sdm]

    @property
    def chroot_steps(self) -> typing.List[typing.Callable[[], None]]:
        # Steps that are executed inside the chroot session
        chroot_steps = {"base": [], "incremental": []}
        chroot_steps["base"].extend(
            [
                self.configure_access,
                self.install_dependencies,
                self.verify_root_fs,
                self.chroot_session.remove_emulator,
            ]
        )
        chroot_steps["incremental"].extend(
            [
                self.configure_access,
                self.run_hooks,
                self.run_post_build_script,
                self.purge_build_dependencies,
                self.verify_root_fs,
                self.chroot_session.remove_emulator,
            ]
        )
        return chroot_steps[self._session.mode]

    def _is_done(self, identifier: str) -> bool:
        return self._session.resume and self._build_log.is_logged(identifier=identifier)

    def _confirm(self, question: str) -> bool:
        if self._session.build_cfg.assume_yes:
            return True
        print(f"\n{question} (Y/n) ", end="")
        try:
            answer = input("").strip().lower()
        except EOFError:
            return False
        return answer in ("", "y", "yes")

    def check_host(self):
        """
        Checks whether the host is able to build images.

        Args:
            None

        Returns:
            None

        Raises:
            Prerequisite_Missing_Error:
                If the process does not run as root or a required tool is missing.
        """

        if os.geteuid() != 0:
            raise Prerequisite_Missing_Error("Building images requires root privileges. Please use sudo.")

        required_tools = list(self.required_tools)
        if self._session.password:
            required_tools.append("openssl")
        missing_tools = [tool for tool in required_tools if shutil.which(tool) is None]
        if missing_tools:
            raise Prerequisite_Missing_Error(f"Required tools not found on PATH: {', '.join(missing_tools)}")

        binfmt_dir = pathlib.Path("/proc/sys/fs/binfmt_misc")
        if not any(binfmt_dir.glob("qemu-aarch64*")):
            pretty_print.print_warning(
                "No binfmt_misc registration for qemu-aarch64 found. Commands inside the chroot will probably fail."
            )

    def print_config_summary(self):
        session = self._session

        def describe_deps(dep_set):
            if not dep_set.enabled:
                return "[SKIPPED]"
            return f"{dep_set.source_file} ({len(dep_set.packages)} package(s))"

        pretty_print.print_build_stage("Build configuration")
        print(f"  Mode:               {session.mode}")
        print(f"  Source image:       {session.source_image}")
        print(f"  Working directory:  {session.work_dir}")
        print(f"  Password:           {'****' if session.password else '[KEEP EXISTING]'}")
        if session.mode == "base":
            print(f"  Extend size:        {f'{session.extend_size_mb} MB' if session.extend_size_mb else '[NONE]'}")
            print(f"  Runtime deps:       {describe_deps(session.runtime_deps)}")
        print(f"  Build deps:         {describe_deps(session.build_deps)}")
        if session.mode == "incremental":
            print(f"  Hooks:              {len(session.hooks)}")
            print(f"  Post-build script:  {session.post_build_script or '[NONE]'}")
            print(f"  Keep build deps:    {'yes' if session.keep_build_deps else 'no'}")
        print(f"  Debug mode:         {'on' if session.debug else 'off'}")
        print(f"  Resume:             {'on' if session.resume else 'off'}")

    def validate_inputs(self):
        """
        Checks the input files of the selected mode and warns about settings that have no effect in this mode.

        Args:
            None

        Returns:
            None

        Raises:
            Config_Not_Found_Error:
                If a required file does not exist.
            Configuration_Error:
                If the source image would be overwritten.
        """

        session = self._session
        pretty_print.print_build_stage(f"Validating the inputs ({session.mode} mode)")

        if not is_remote_reference(session.source_image):
            source_image = pathlib.Path(session.source_image)
            if not source_image.is_file():
                raise Config_Not_Found_Error(source_image, what="Source image")
            if source_image.resolve() == session.image_file.resolve():
                raise Configuration_Error(
                    f"The source image {source_image} is located in the working directory and would be overwritten"
                )
        if session.post_build_script is not None and not session.post_build_script.is_file():
            raise Config_Not_Found_Error(session.post_build_script, what="Post-build script")

        if session.mode == "base":
            if session.hooks:
                pretty_print.print_warning(f"{len(session.hooks)} hook(s) specified. Hooks are ignored in base mode.")
            if session.post_build_script is not None:
                pretty_print.print_warning("The post-build script is ignored in base mode.")
            if session.keep_build_deps:
                pretty_print.print_warning("'keep build deps' has no effect in base mode.")
            if not session.runtime_deps.enabled and not session.build_deps.enabled:
                pretty_print.print_warning("Neither runtime nor build dependencies specified. Nothing is installed.")
        else:
            if session.extend_size_mb:
                pretty_print.print_warning(
                    f"Extend size of {session.extend_size_mb} MB specified. The image is not extended in "
                    "incremental mode."
                )
            if session.runtime_deps.enabled:
                pretty_print.print_warning(
                    "Runtime dependencies are ignored in incremental mode. They are part of the base image."
                )
            if not session.hooks and session.post_build_script is None:
                pretty_print.print_warning("Neither hooks nor a post-build script specified.")
            if not session.build_deps.enabled and not session.keep_build_deps:
                pretty_print.print_warning("No build dependencies specified. Nothing will be purged.")

        pretty_print.print_info("Inputs are valid")

    def setup_workdir(self):
        """
        Creates the working directory, locks it and removes leftovers of a previous session.

        Args:
            None

        Returns:
            None

        Raises:
            Session_Locked_Error:
                If another session is using the working directory.
        """

        session = self._session
        pretty_print.print_build_stage(f"Setting up the working directory {session.work_dir}")
        session.work_dir.mkdir(parents=True, exist_ok=True)
        self._session_lock.acquire()
        pretty_print.set_log_file(session.work_dir / self.build_log_name)
        session.log_dir.mkdir(parents=True, exist_ok=True)

        self.chroot_session.cleanup_stale()

        if not session.resume:
            self._build_log.clear()
        elif not session.image_file.is_file():
            pretty_print.print_warning("Nothing to resume. The working image does not exist.")
            self._build_log.clear()

    def check_disk_space(self):
        """
        Asks for confirmation if the free space in the working directory is low.

        Args:
            None

        Returns:
            None

        Raises:
            Low_Disk_Space_Error:
                If the user does not want to continue.
        """

        required_mb = self._session.build_cfg.min_free_space_mb
        available_mb = shutil.disk_usage(self._session.work_dir).free // (1024 * 1024)
        if available_mb >= required_mb:
            return

        pretty_print.print_warning(
            f"Only {available_mb} MB available in {self._session.work_dir} ({required_mb} MB recommended)."
        )
        if not self._confirm("The build might fail. Do you really want to continue?"):
            raise Low_Disk_Space_Error(self._session.work_dir, available_mb=available_mb, required_mb=required_mb)

    def _decompress_image(self, source: pathlib.Path, target: pathlib.Path):
        pretty_print.print_build(f"Decompressing {source.name}...")
        with lzma.open(source, "rb") as src, target.open("wb") as dst:
            with tqdm.tqdm(unit="B", unit_scale=True, unit_divisor=1024) as progress:
                while True:
                    chunk = src.read(1024 * 1024)
                    if not chunk:
                        break
                    dst.write(chunk)
                    progress.update(len(chunk))

    def prepare_image(self):
        """
        Creates the working image from the source image. Compressed images are decompressed and remote images are
        downloaded first.

        Args:
            None

        Returns:
            None

        Raises:
            Image_Preparation_Error:
                If the image cannot be downloaded, decompressed or copied.
            Low_Disk_Space_Error:
                If the free space is low and the user does not want to continue.
        """

        identifier = f"function-{inspect.currentframe().f_code.co_name}-success"
        if self._is_done(identifier) and self._session.image_file.is_file():
            pretty_print.print_build("No need to prepare the image again. It is already available...")
            return

        pretty_print.print_build_stage("Preparing the image")
        self.check_disk_space()

        with self._build_log.timestamp(identifier=identifier):
            source = self._session.source_image
            if is_remote_reference(source):
                source_image = File_Downloader.get_file(url=source, output_dir=self._session.download_dir)
            else:
                source_image = pathlib.Path(source)

            target = self._session.image_file
            try:
                if source_image.suffix == ".xz":
                    self._decompress_image(source=source_image, target=target)
                else:
                    pretty_print.print_build(f"Copying {source_image.name} to {target}...")
                    shutil.copyfile(source_image, target)
            except (OSError, lzma.LZMAError) as e:
                target.unlink(missing_ok=True)
                raise Image_Preparation_Error(f"Unable to create {target} from {source_image}: {e}") from e

            pretty_print.print_info(f"Working image: {target}")

    def sdm_command(self) -> typing.List[str]:
        """
        Assembles the sdm command. The password is part of a single argument and never passes through a shell.
        """

        session = self._session
        if session.mode == "base" and session.extend_size_mb > 0:
            command = ["sdm", "--batch", "--extend", "--xmb", str(session.extend_size_mb)]
        else:
            command = ["sdm", "--batch", "--redo-customize"]

        command.append("--customize")
        if session.password:
            command.extend(["--plugin", f"user:adduser=pi|password={session.password}"])
        command.extend(["--plugin", "disables:piwiz", "--expand-root", "--nowait-timesync", str(session.image_file)])
        return command

    def run_sdm(self):
        """
        Customizes and, in base mode, extends the working image with sdm.

        Args:
            None

        Returns:
            None

        Raises:
            Image_Preparation_Error:
                If sdm fails.
        """

        identifier = f"function-{inspect.currentframe().f_code.co_name}-success"
        if self._is_done(identifier):
            pretty_print.print_build("No need to run sdm again. The image is already customized...")
            return

        pretty_print.print_build_stage("Customizing the image with sdm")
        with self._build_log.timestamp(identifier=identifier):
            try:
                self.shell_executor.exec_sh_command(
                    self.sdm_command(),
                    logfile=self._session.log_dir / "sdm.log",
                    output_scrolling=True,
                    print_command=True,
                )
            except subprocess.CalledProcessError as e:
                raise Image_Preparation_Error(f"sdm failed with return code {e.returncode}") from e

    def configure_access(self):
        """
        Sets the password of user 'pi' and enables password authentication via SSH.

        Args:
            None

        Returns:
            None

        Raises:
            Configuration_Error:
                If the password hash cannot be created.
        """

        pretty_print.print_build_stage("Configuring user access")
        root = self._session.mount_point

        if self._session.password:
            pretty_print.print_build("Setting the password of user 'pi'...")
            try:
                password_hash = self.shell_executor.get_sh_results(
                    ["openssl", "passwd", "-6", "-stdin"], input=f"{self._session.password}\n"
                ).stdout.strip()
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                raise Configuration_Error(f"Unable to create the password hash for user 'pi' with openssl: {e}") from e
            pretty_print.register_secret(password_hash)
            shadow = root / "etc" / "shadow"
            if shadow.is_file():
                lines = shadow.read_text().splitlines()
                found = False
                for index, line in enumerate(lines):
                    fields = line.split(":")
                    if fields[0] == "pi" and len(fields) > 1:
                        fields[1] = password_hash
                        lines[index] = ":".join(fields)
                        found = True
                if found:
                    shadow.write_text("\n".join(lines) + "\n")
                else:
                    pretty_print.print_warning("User 'pi' not found in etc/shadow. The password was set by sdm only.")
            else:
                pretty_print.print_warning("etc/shadow not found. The password was set by sdm only.")
        else:
            pretty_print.print_info("No password specified. Keeping the existing password...")

        sshd_config = root / "etc" / "ssh" / "sshd_config"
        if sshd_config.is_file():
            content = sshd_config.read_text()
            for key, value in (("PasswordAuthentication", "yes"), ("PermitRootLogin", "no")):
                pattern = re.compile(rf"^#?\s*{key}\s+.*$", flags=re.MULTILINE)
                if pattern.search(content):
                    content = pattern.sub(f"{key} {value}", content, count=1)
                else:
                    content = content.rstrip("\n") + f"\n{key} {value}\n"
            sshd_config.write_text(content)
        else:
            pretty_print.print_warning("etc/ssh/sshd_config not found. SSH is not configured.")

        ssh_service = root / "etc" / "systemd" / "system" / "multi-user.target.wants" / "ssh.service"
        if not ssh_service.is_symlink() and not ssh_service.exists():
            ssh_service.parent.mkdir(parents=True, exist_ok=True)
            ssh_service.symlink_to("/lib/systemd/system/ssh.service")
        pretty_print.print_info("SSH is enabled")

    def install_dependencies(self):
        """
        Installs the runtime and the build dependencies.

        Args:
            None

        Returns:
            None

        Raises:
            Package_Operation_Failed_Error:
                If apt-get fails.
        """

        identifier = f"function-{inspect.currentframe().f_code.co_name}-success"
        if self._is_done(identifier):
            pretty_print.print_build("No need to install the dependencies again. They are already installed...")
            return

        pretty_print.print_build_stage("Installing dependencies")
        packages = []
        for dep_set in (self._session.runtime_deps, self._session.build_deps):
            if dep_set.enabled:
                packages.extend(dep_set.packages)
            else:
                pretty_print.print_info(f"Installation of {dep_set.name} skipped")
                self.skipped_stages.append(f"Installation of {dep_set.name}")

        with self._build_log.timestamp(identifier=identifier):
            self.package_manager.install(packages, log_name="dependencies")

    def run_hooks(self):
        """
        Runs all hooks in order. The first failing hook aborts the build.

        Args:
            None

        Returns:
            None

        Raises:
            Hook_Failed_Error:
                If a hook fails.
        """

        pretty_print.print_build_stage(f"Running {len(self._session.hooks)} hook(s)")
        if not self._session.hooks:
            pretty_print.print_info("No hooks specified")
            self.skipped_stages.append("Hooks")
            return

        for ordinal, hook in enumerate(self._session.hooks, start=1):
            identifier = f"hook-{ordinal}-{hook.name}-success"
            if self._is_done(identifier):
                pretty_print.print_build(f"No need to run hook [{ordinal}] {hook.name} again...")
                continue
            with self._build_log.timestamp(identifier=identifier):
                self.hook_executor.run_hook(hook, ordinal=ordinal)

    def run_post_build_script(self):
        """
        Runs the post-build script in the same way as a hook.

        Args:
            None

        Returns:
            None

        Raises:
            Hook_Failed_Error:
                If the script fails.
        """

        if self._session.post_build_script is None:
            pretty_print.print_info("No post-build script specified")
            return

        identifier = f"function-{inspect.currentframe().f_code.co_name}-success"
        if self._is_done(identifier):
            pretty_print.print_build("No need to run the post-build script again...")
            return

        pretty_print.print_build_stage("Running the post-build script")
        with self._build_log.timestamp(identifier=identifier):
            self.hook_executor.run_hook(Hook_Spec(script=str(self._session.post_build_script)), ordinal="post-build")

    def purge_build_dependencies(self):
        """
        Purges the build dependencies from the image, unless they are to be kept.

        Args:
            None

        Returns:
            None

        Raises:
            Package_Operation_Failed_Error:
                If apt-get fails.
        """

        pretty_print.print_build_stage("Purging build dependencies")
        build_deps = self._session.build_deps
        if self._session.keep_build_deps:
            pretty_print.print_info("Purging of build dependencies skipped (keep build deps is set)")
            self.skipped_stages.append("Purging of build dependencies")
            return
        if not build_deps.enabled:
            pretty_print.print_info("Purging of build dependencies skipped (no build dependencies specified)")
            self.skipped_stages.append("Purging of build dependencies")
            return

        identifier = f"function-{inspect.currentframe().f_code.co_name}-success"
        if self._is_done(identifier):
            pretty_print.print_build("No need to purge the build dependencies again...")
            return

        with self._build_log.timestamp(identifier=identifier):
            self.package_manager.purge(build_deps.packages, log_name="build_dependencies")

    def verify_root_fs(self):
        """
        Checks that the root file system contains the expected directories.

        Args:
            None

        Returns:
            None

        Raises:
            Verification_Error:
                If a directory is missing.
        """

        missing = [d for d in self.expected_dirs if not (self._session.mount_point / d).exists()]
        if missing:
            raise Verification_Error(
                f"The following directories are missing in {self._session.mount_point}: {', '.join(missing)}"
            )
        pretty_print.print_info("The root file system looks complete")

    def keep_debug_session(self):
        cleanup_script = self.chroot_session.write_debug_markers()
        pretty_print.print_warning(
            "Debug mode is on. The image stays mounted for inspection.\n"
            f"\tEnter the chroot:  sudo chroot {self._session.mount_point} /bin/bash\n"
            f"\tClean up later:    sudo pi-imager cleanup --output {self._session.work_dir}\n"
            f"\t               or: sudo {cleanup_script}"
        )

    def _run_chroot_steps(self):
        failed = True
        try:
            pretty_print.print_build_stage("Setting up the chroot session")
            self.chroot_session.setup()
            for step in self.chroot_steps:
                step()
            failed = False
        finally:
            if failed and self._session.debug:
                self.keep_debug_session()
            else:
                self.chroot_session.teardown()

    def print_summary(self):
        image = self._session.image_file
        size_mb = image.stat().st_size / (1024 * 1024) if image.is_file() else 0
        pretty_print.print_build_stage(f"Image ready ({self._session.mode} mode)")
        print(f"  Image: {image}")
        print(f"  Size:  {size_mb:.0f} MB")
        print("  Write it to an SD card with:")
        print(f"    sudo dd if={image} of=/dev/sdX bs=4M status=progress conv=fsync")
        for stage in self.skipped_stages:
            pretty_print.print_warning(f"Skipped: {stage}")

    def build(self):
        """
        Runs the complete pipeline of the selected mode. The chroot session is always torn down, unless the build
        fails in debug mode.

        Args:
            None

        Returns:
            None

        Raises:
            Pi_Imager_Error:
                If any step fails.
        """

        self.skipped_stages = []
        try:
            for step in self.setup_steps:
                step()
            self._run_chroot_steps()
        finally:
            self._session_lock.release()
        self.print_summary()
