import os
import time
import shlex
import shutil
import pathlib
import subprocess
import typing

import pi_imager.pretty_print as pretty_print
from pi_imager.shell_executor import Shell_Executor
from pi_imager.exceptions import (
    No_Partitions_Found_Error,
    Mount_Failed_Error,
    Emulator_Missing_Error,
    Chroot_Unusable_Error,
    Image_Preparation_Error,
)
from raspberrypi_support.build_session import Build_Session


class Chroot_Session:
    """
    Makes the root file system of a Raspberry Pi OS image usable via chroot. The image is attached to a loop
    device, its partitions are mounted, the pseudo file systems of the host are bound into it and a user-mode
    emulator is copied into it.
    """

    # Pseudo file systems of the host in the order in which they are mounted
    pseudo_file_systems = ["proc", "sys", "dev", "dev/pts"]
    # Mount point of the boot partition relative to the root partition
    boot_dir = pathlib.PurePosixPath("boot/firmware")
    # Files that describe an intact debug session
    mount_point_file_name = ".mount-point"
    cleanup_script_name = "cleanup.sh"

    # Waiting for the partition nodes of the loop device
    partition_wait_attempts = 10
    partition_wait_interval = 1.0

    def __init__(
        self,
        session: Build_Session,
        shell_executor: Shell_Executor,
        host_resolv_conf: pathlib.Path = pathlib.Path("/etc/resolv.conf"),
    ):
        self._session = session
        self._shell_executor = shell_executor
        self._host_resolv_conf = host_resolv_conf

    @staticmethod
    def unmount_targets(mount_point: pathlib.Path) -> typing.List[pathlib.Path]:
        """
        Returns all mount targets of a chroot session in the order in which they have to be unmounted
        """

        targets = [mount_point / fs for fs in reversed(Chroot_Session.pseudo_file_systems)]
        targets.append(mount_point / Chroot_Session.boot_dir)
        targets.append(mount_point)
        return targets

    @staticmethod
    def partition_device(loop_device: str, partition: int) -> str:
        return f"{loop_device}p{partition}"

    def attach_loop(self) -> str:
        """
        Attaches the working image to a free loop device and waits until the partitions are available.

        Args:
            None

        Returns:
            Path of the loop device.

        Raises:
            Image_Preparation_Error:
                If no loop device could be attached.
            No_Partitions_Found_Error:
                If the root partition of the image does not appear.
        """

        pretty_print.print_build(f"Attaching {self._session.image_file.name} to a loop device...")
        try:
            result = self._shell_executor.get_sh_results(
                ["losetup", "--find", "--show", "--partscan", self._session.image_file]
            )
        except subprocess.CalledProcessError as e:
            raise Image_Preparation_Error(f"Unable to attach {self._session.image_file} to a loop device") from e

        loop_device = result.stdout.strip()
        self._session.attach_loop_device(loop_device)
        pretty_print.print_info(f"Loop device: {loop_device}")

        # The kernel needs a moment to create the device nodes of the partitions
        root_partition = self.partition_device(loop_device, 2)
        for attempt in range(self.partition_wait_attempts):
            if pathlib.Path(root_partition).exists():
                return loop_device
            if attempt == 0:
                self._shell_executor.get_sh_results(["partprobe", loop_device], check=False)
            time.sleep(self.partition_wait_interval)

        if pathlib.Path(root_partition).exists():
            return loop_device
        raise No_Partitions_Found_Error(loop_device=loop_device, partition=root_partition)

    def _mount(self, command: typing.List[str], source: str, target: pathlib.Path):
        try:
            self._shell_executor.get_sh_results(command)
        except subprocess.CalledProcessError as e:
            raise Mount_Failed_Error(source=source, target=target) from e

    def mount_partitions(self):
        """
        Mounts the root partition at the mount point and the boot partition at boot/firmware.

        Args:
            None

        Returns:
            None

        Raises:
            Mount_Failed_Error:
                If a partition cannot be mounted.
        """

        loop_device = self._session.loop_device
        mount_point = self._session.mount_point
        mount_point.mkdir(parents=True, exist_ok=True)

        root_partition = self.partition_device(loop_device, 2)
        pretty_print.print_build(f"Mounting {root_partition} at {mount_point}...")
        self._mount(["mount", root_partition, mount_point], source=root_partition, target=mount_point)

        boot_partition = self.partition_device(loop_device, 1)
        boot_mount_point = mount_point / self.boot_dir
        boot_mount_point.mkdir(parents=True, exist_ok=True)
        pretty_print.print_build(f"Mounting {boot_partition} at {boot_mount_point}...")
        self._mount(["mount", boot_partition, boot_mount_point], source=boot_partition, target=boot_mount_point)

    def bind_pseudo_filesystems(self):
        """
        Binds /proc, /sys, /dev and /dev/pts of the host into the root file system and copies the DNS
        configuration of the host.

        Args:
            None

        Returns:
            None

        Raises:
            Mount_Failed_Error:
                If a file system cannot be bound.
        """

        pretty_print.print_build("Binding the pseudo file systems of the host...")
        for fs in self.pseudo_file_systems:
            source = f"/{fs}"
            target = self._session.mount_point / fs
            target.mkdir(parents=True, exist_ok=True)
            self._mount(["mount", "--bind", source, target], source=source, target=target)

        resolv_conf = self._session.mount_point / "etc" / "resolv.conf"
        if self._host_resolv_conf.is_file():
            resolv_conf.parent.mkdir(parents=True, exist_ok=True)
            # A symlink would point to a file of the host
            if resolv_conf.is_symlink():
                resolv_conf.unlink()
            shutil.copyfile(self._host_resolv_conf, resolv_conf)
        else:
            pretty_print.print_warning(
                f"{self._host_resolv_conf} not found. Name resolution might not work inside the chroot."
            )

    @property
    def emulator_in_root(self) -> pathlib.Path:
        return self._session.mount_point / "usr" / "bin" / self._session.emulator.name

    def install_emulator(self):
        """
        Copies the user-mode emulator into the root file system.

        Args:
            None

        Returns:
            None

        Raises:
            Emulator_Missing_Error:
                If the emulator does not exist on the host.
        """

        emulator = self._session.emulator
        if not emulator.is_file():
            raise Emulator_Missing_Error(emulator)

        pretty_print.print_build(f"Installing {emulator.name} in the root file system...")
        self.emulator_in_root.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(emulator, self.emulator_in_root)
        self.emulator_in_root.chmod(0o755)

    def verify_chroot(self):
        """
        Runs a command that does nothing inside the chroot.

        Args:
            None

        Returns:
            None

        Raises:
            Chroot_Unusable_Error:
                If the command cannot be executed.
        """

        try:
            self._shell_executor.get_sh_results(["chroot", self._session.mount_point, "/bin/true"])
        except subprocess.CalledProcessError as e:
            raise Chroot_Unusable_Error(self._session.mount_point) from e
        pretty_print.print_info("The chroot is working")

    def setup(self):
        self.attach_loop()
        self.mount_partitions()
        self.bind_pseudo_filesystems()
        self.install_emulator()
        self.verify_chroot()

    def remove_emulator(self):
        if self.emulator_in_root.exists():
            pretty_print.print_build(f"Removing {self._session.emulator.name} from the root file system...")
            self.emulator_in_root.unlink()

    @staticmethod
    def release(shell_executor: Shell_Executor, mount_point: pathlib.Path, loop_device: typing.Optional[str]):
        """
        Unmounts everything below the mount point in reverse order and detaches the loop device. Lazy unmounts
        are used so that a busy mount never blocks. Targets that are not mounted and a loop device that is not
        attached are ignored.

        Args:
            shell_executor:
                Executor for the shell commands.
            mount_point:
                Mount point of the root partition.
            loop_device:
                Loop device to detach or None.

        Returns:
            None

        Raises:
            None
        """

        for target in Chroot_Session.unmount_targets(mount_point):
            shell_executor.get_sh_results(["umount", "-l", target], check=False)
        if loop_device is not None:
            shell_executor.get_sh_results(["losetup", "-d", loop_device], check=False)

    def teardown(self):
        """
        Releases all resources of the session. Can be called any number of times.

        Args:
            None

        Returns:
            None

        Raises:
            None
        """

        pretty_print.print_clean("Unmounting the image and detaching the loop device...")
        self.release(
            shell_executor=self._shell_executor,
            mount_point=self._session.mount_point,
            loop_device=self._session.recorded_loop_device(),
        )
        self._session.detach_loop_device()

    def cleanup_stale(self):
        """
        Releases mounts and loop devices that a previous session left behind in the working directory.

        Args:
            None

        Returns:
            None

        Raises:
            None
        """

        if os.path.ismount(self._session.mount_point):
            pretty_print.print_clean(f"Unmounting leftovers of a previous session at {self._session.mount_point}...")
            self._shell_executor.get_sh_results(["umount", "-R", "-l", self._session.mount_point], check=False)

        stale_loop_device = self._session.recorded_loop_device()
        if stale_loop_device is not None:
            pretty_print.print_clean(f"Detaching loop device {stale_loop_device} of a previous session...")
            self._shell_executor.get_sh_results(["losetup", "-d", stale_loop_device], check=False)
            self._session.detach_loop_device()

        if self._session.image_file.is_file():
            result = self._shell_executor.get_sh_results(["losetup", "-j", self._session.image_file], check=False)
            for line in result.stdout.splitlines():
                loop_device = line.split(":", 1)[0].strip()
                if loop_device:
                    pretty_print.print_clean(f"Detaching loop device {loop_device}...")
                    self._shell_executor.get_sh_results(["losetup", "-d", loop_device], check=False)

    def write_debug_markers(self) -> pathlib.Path:
        """
        Keeps a record of the intact session so that it can be inspected and torn down later.

        Args:
            None

        Returns:
            Path of the generated cleanup script.

        Raises:
            None
        """

        work_dir = self._session.work_dir
        (work_dir / self.mount_point_file_name).write_text(f"{self._session.mount_point}\n")

        lines = ["#!/bin/bash", "# Tears down the chroot session that was kept for debugging"]
        for target in self.unmount_targets(self._session.mount_point):
            lines.append(f"umount -l {shlex.quote(str(target))} 2>/dev/null || true")
        loop_device = self._session.recorded_loop_device()
        if loop_device is not None:
            lines.append(f"losetup -d {shlex.quote(loop_device)} 2>/dev/null || true")
        markers = [
            self._session.loop_device_file,
            work_dir / self.mount_point_file_name,
            work_dir / self.cleanup_script_name,
        ]
        lines.append("rm -f " + " ".join(shlex.quote(str(marker)) for marker in markers))

        cleanup_script = work_dir / self.cleanup_script_name
        cleanup_script.write_text("\n".join(lines) + "\n")
        cleanup_script.chmod(0o755)
        return cleanup_script

    @staticmethod
    def cleanup_work_dir(work_dir: pathlib.Path, shell_executor: Shell_Executor):
        """
        Tears down a chroot session that was kept for debugging.

        Args:
            work_dir:
                Working directory of the session.
            shell_executor:
                Executor for the shell commands.

        Returns:
            None

        Raises:
            None
        """

        mount_point_file = work_dir / Chroot_Session.mount_point_file_name
        loop_device_file = work_dir / Build_Session.loop_device_file_name

        if mount_point_file.is_file():
            mount_point = pathlib.Path(mount_point_file.read_text().strip())
        else:
            mount_point = work_dir / "mnt"
        loop_device = None
        if loop_device_file.is_file():
            loop_device = loop_device_file.read_text().strip() or None

        pretty_print.print_clean(f"Unmounting everything below {mount_point}...")
        Chroot_Session.release(shell_executor=shell_executor, mount_point=mount_point, loop_device=loop_device)
        if loop_device is not None:
            pretty_print.print_clean(f"Detached loop device {loop_device}")

        for marker in (mount_point_file, loop_device_file, work_dir / Chroot_Session.cleanup_script_name):
            marker.unlink(missing_ok=True)
        if mount_point.is_dir() and not os.path.ismount(mount_point) and not any(mount_point.iterdir()):
            mount_point.rmdir()
