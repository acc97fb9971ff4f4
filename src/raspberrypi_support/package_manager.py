import subprocess
import typing

import pi_imager.pretty_print as pretty_print
from pi_imager.shell_executor import Shell_Executor
from pi_imager.exceptions import Package_Operation_Failed_Error
from raspberrypi_support.build_session import Build_Session


class Package_Manager:
    """
    Installs and purges packages inside the chroot with apt-get
    """

    apt_env = {"DEBIAN_FRONTEND": "noninteractive"}

    def __init__(self, session: Build_Session, shell_executor: Shell_Executor):
        self._session = session
        self._shell_executor = shell_executor

    def _apt_get(self, sub_command: str, args: typing.List[str], packages: typing.List[str], log_name: str):
        command = ["chroot", self._session.mount_point, "apt-get", sub_command] + args
        try:
            self._shell_executor.exec_sh_command(
                command,
                env=self.apt_env,
                logfile=self._session.log_dir / f"{log_name}_{sub_command}.log",
                output_scrolling=True,
                print_command=True,
            )
        except subprocess.CalledProcessError as e:
            raise Package_Operation_Failed_Error(
                sub_command=sub_command, packages=packages, returncode=e.returncode
            ) from e

    def install(self, packages: typing.List[str], log_name: str = "install"):
        """
        Installs packages inside the chroot. Packages that are already installed are left as they are.

        Args:
            packages:
                Package names in installation order.
            log_name:
                Prefix of the log files.

        Returns:
            None

        Raises:
            Package_Operation_Failed_Error:
                If apt-get fails.
        """

        if not packages:
            pretty_print.print_info("No packages to install")
            return

        pretty_print.print_build(f"Installing {len(packages)} package(s): {' '.join(packages)}")
        self._apt_get("update", [], packages=packages, log_name=log_name)
        self._apt_get("install", ["-y"] + list(packages), packages=packages, log_name=log_name)

    def purge(self, packages: typing.List[str], log_name: str = "purge"):
        """
        Purges packages inside the chroot and removes packages that are no longer needed.

        Args:
            packages:
                Package names.
            log_name:
                Prefix of the log files.

        Returns:
            None

        Raises:
            Package_Operation_Failed_Error:
                If apt-get fails.
        """

        if not packages:
            pretty_print.print_info("No packages to purge")
            return

        pretty_print.print_clean(f"Purging {len(packages)} package(s): {' '.join(packages)}")
        self._apt_get("update", [], packages=packages, log_name=log_name)
        self._apt_get("purge", ["-y"] + list(packages), packages=packages, log_name=log_name)
        self._apt_get("autoremove", ["-y"], packages=packages, log_name=log_name)
        self._apt_get("clean", [], packages=packages, log_name=log_name)
