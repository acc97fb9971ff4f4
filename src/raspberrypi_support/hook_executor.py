import os
import shutil
import pathlib
import subprocess
import typing

import pi_imager.pretty_print as pretty_print
from pi_imager.shell_executor import Shell_Executor
from pi_imager.exceptions import Hook_Failed_Error, Configuration_Error
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.raspberrypi_image_model import Hook_Spec


class Hook_Executor:
    """
    Runs hooks inside the chroot, one after another
    """

    # Locations inside the root file system
    script_dir = pathlib.PurePosixPath("/tmp")
    local_source_dir = pathlib.PurePosixPath("/tmp/hook-sources")

    def __init__(self, session: Build_Session, shell_executor: Shell_Executor):
        self._session = session
        self._shell_executor = shell_executor

    def _in_root(self, path: typing.Union[str, pathlib.PurePosixPath]) -> pathlib.Path:
        # Paths inside the image are absolute, so the leading '/' has to go
        return self._session.mount_point / str(path).lstrip("/")

    def build_env(self, hook: Hook_Spec) -> typing.Dict[str, str]:
        """
        Creates the environment variables that describe the session and the hook.

        Args:
            hook:
                The hook.

        Returns:
            Environment variables for the hook process.

        Raises:
            None
        """

        env = {
            "MOUNT_POINT": str(self._session.mount_point),
            "PI_PASSWORD": self._session.password,
            "IMAGE_WORK_DIR": str(self._session.work_dir),
        }
        if not hook.is_parameterized:
            return env

        env.update(
            {
                "HOOK_GIT_REPO": hook.source,
                "HOOK_GIT_TAG": hook.revision,
                "HOOK_INSTALL_DEST": hook.install_dest,
                "HOOK_NAME": hook.name,
                "HOOK_DEP_LIST": hook.dep_list,
                "DEBUG_MODE": "1" if self._session.debug else "0",
            }
        )
        if hook.is_local_source:
            env["HOOK_LOCAL_SOURCE"] = str(self.local_source_dir / hook.name)
        if hook.post_install:
            env["HOOK_POST_INSTALL_CMDS"] = hook.post_install

        return env

    def _stage_local_source(self, hook: Hook_Spec):
        source_path = hook.local_source_path
        if not source_path.is_dir():
            raise Configuration_Error(f"Local source of hook {hook.script} not found: {source_path}")
        target = self._in_root(self.local_source_dir / hook.name)
        pretty_print.print_build(f"Copying local source {source_path} to {target}...")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source_path, target, symlinks=True, dirs_exist_ok=True)

    def marker_exists(self, hook: Hook_Spec) -> bool:
        return hook.marker is not None and self._in_root(hook.marker).exists()

    def run_hook(self, hook: Hook_Spec, ordinal: typing.Union[int, str]) -> bool:
        """
        Copies a hook into the root file system and executes it with bash inside the chroot. The copy is deleted
        if the hook succeeds and kept for inspection if it fails.

        Args:
            hook:
                The hook.
            ordinal:
                Position of the hook used in messages and log file names.

        Returns:
            True if the hook was executed, False if it was skipped because its marker exists.

        Raises:
            Hook_Failed_Error:
                If the hook returns a non-zero exit code.
            Configuration_Error:
                If the local source of the hook does not exist.
        """

        script = pathlib.Path(hook.script)
        if self.marker_exists(hook):
            pretty_print.print_build(
                f"No need to run hook [{ordinal}] {script.name}. Marker {hook.marker} already exists..."
            )
            return False

        pretty_print.print_build(f"Running hook [{ordinal}] {script.name} ({hook.name})...")

        if hook.is_local_source:
            self._stage_local_source(hook)

        # Copy the hook into the root file system
        script_in_chroot = self.script_dir / script.name
        script_copy = self._in_root(script_in_chroot)
        script_copy.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(script, script_copy)
        if not os.access(script, os.X_OK):
            pretty_print.print_warning(f"{script} is not executable. The permission is set for the copy in the image.")
        script_copy.chmod(0o755)

        try:
            self._shell_executor.exec_sh_command(
                ["chroot", self._session.mount_point, "/bin/bash", script_in_chroot],
                env=self.build_env(hook),
                logfile=self._session.log_dir / f"hook_{ordinal}_{script.stem}.log",
                output_scrolling=True,
                print_command=True,
            )
        except subprocess.CalledProcessError as e:
            pretty_print.print_info(f"The failed hook remains in the image for inspection: {script_copy}")
            raise Hook_Failed_Error(script=script, ordinal=ordinal, returncode=e.returncode) from e

        script_copy.unlink(missing_ok=True)

        if hook.marker is not None and not self.marker_exists(hook):
            marker = self._in_root(hook.marker)
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.touch()

        return True
