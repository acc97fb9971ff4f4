import pathlib
import typing

from pi_imager.exceptions import Config_Not_Found_Error
from raspberrypi_support.raspberrypi_image_model import Dependency_Set, DISABLED_REFERENCE


class Dependency_List_Parser:
    """
    Reads package lists. One package per line, lines starting with '#' are comments.
    """

    @staticmethod
    def read_packages(list_file: pathlib.Path) -> typing.List[str]:
        """
        Reads all package names from a package list. Every line that is neither blank nor a comment is taken as a
        single package name. Inline comments are not supported, the whole line is passed to the package manager.

        Args:
            list_file:
                Path of the package list.

        Returns:
            Package names in file order.

        Raises:
            Config_Not_Found_Error:
                If the file does not exist.
        """

        if not list_file.is_file():
            raise Config_Not_Found_Error(list_file, what="Dependency file")

        packages = []
        with list_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                packages.append(line)

        return packages

    @staticmethod
    def parse(reference: typing.Optional[str], name: str, intent: str) -> Dependency_Set:
        """
        Creates a dependency set from a file reference.

        Args:
            reference:
                Path of the package list, 'none' to disable the set or None if not specified.
            name:
                Name of the set used in messages.
            intent:
                'runtime' or 'build'.

        Returns:
            The dependency set. It is disabled and empty if the reference is 'none' or None.

        Raises:
            Config_Not_Found_Error:
                If the file does not exist.
        """

        if reference is None or reference == DISABLED_REFERENCE:
            return Dependency_Set(name=name, intent=intent, packages=[], enabled=False)

        return Dependency_Set(
            name=name,
            intent=intent,
            packages=Dependency_List_Parser.read_packages(pathlib.Path(reference)),
            enabled=True,
            source_file=reference,
        )
