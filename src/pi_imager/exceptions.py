import pathlib
import typing


class Pi_Imager_Error(Exception):
    """
    Base class for all errors that abort an image build
    """

    category = "BuildError"

    def __str__(self):
        return f"{self.category}: {super().__str__()}"


# Configuration and input errors


class Config_Not_Found_Error(Pi_Imager_Error):
    category = "ConfigNotFound"

    def __init__(self, path: pathlib.Path, what: str = "File"):
        self.path = path
        super().__init__(f"{what} not found: {path}")


class Configuration_Error(Pi_Imager_Error):
    category = "ConfigurationError"


class Invalid_Mode_Error(Pi_Imager_Error):
    category = "InvalidMode"

    def __init__(self, mode: typing.Any):
        self.mode = mode
        super().__init__(f"Invalid build mode '{mode}'. Supported modes are 'base' and 'incremental'.")


class Malformed_Hook_Line_Error(Pi_Imager_Error):
    category = "MalformedHookLine"

    def __init__(self, source: str, line_nr: int, reason: str):
        self.source = source
        self.line_nr = line_nr
        super().__init__(f"{source}, line {line_nr}: {reason}")


class Hook_Script_Not_Found_Error(Pi_Imager_Error):
    category = "HookScriptNotFound"

    def __init__(self, script: pathlib.Path, source: str, line_nr: int):
        self.script = script
        self.source = source
        self.line_nr = line_nr
        super().__init__(f"{source}, line {line_nr}: hook script not found: {script}")


class Prerequisite_Missing_Error(Pi_Imager_Error):
    category = "PrerequisiteMissing"


class Low_Disk_Space_Error(Pi_Imager_Error):
    category = "LowDiskSpace"

    def __init__(self, path: pathlib.Path, available_mb: int, required_mb: int):
        self.path = path
        self.available_mb = available_mb
        self.required_mb = required_mb
        super().__init__(
            f"Only {available_mb} MB available in {path} ({required_mb} MB recommended). Aborted by user."
        )


class Session_Locked_Error(Pi_Imager_Error):
    category = "SessionLocked"

    def __init__(self, lock_file: pathlib.Path):
        self.lock_file = lock_file
        super().__init__(f"Another session is using this working directory (lock file: {lock_file})")


# Errors of the build steps


class Image_Preparation_Error(Pi_Imager_Error):
    category = "ImagePreparationFailed"


class No_Partitions_Found_Error(Pi_Imager_Error):
    category = "NoPartitionsFound"

    def __init__(self, loop_device: str, partition: str):
        self.loop_device = loop_device
        self.partition = partition
        super().__init__(f"Partition {partition} of loop device {loop_device} did not appear")


class Mount_Failed_Error(Pi_Imager_Error):
    category = "MountFailed"

    def __init__(self, source: str, target: pathlib.Path):
        self.source = source
        self.target = target
        super().__init__(f"Unable to mount {source} at {target}")


class Emulator_Missing_Error(Pi_Imager_Error):
    category = "EmulatorMissing"

    def __init__(self, emulator: pathlib.Path):
        self.emulator = emulator
        super().__init__(f"User-mode emulator not found on the host: {emulator}")


class Chroot_Unusable_Error(Pi_Imager_Error):
    category = "ChrootUnusable"

    def __init__(self, mount_point: pathlib.Path):
        self.mount_point = mount_point
        super().__init__(f"Unable to execute commands in the chroot at {mount_point}")


class Package_Operation_Failed_Error(Pi_Imager_Error):
    category = "PackageOperationFailed"

    def __init__(self, sub_command: str, packages: typing.List[str], returncode: int):
        self.sub_command = sub_command
        self.packages = list(packages)
        self.returncode = returncode
        super().__init__(
            f"'apt-get {sub_command}' failed with return code {returncode} (packages: {' '.join(packages) or '-'})"
        )


class Hook_Failed_Error(Pi_Imager_Error):
    category = "HookFailed"

    def __init__(self, script: pathlib.Path, ordinal: typing.Union[int, str], returncode: int):
        self.script = script
        self.ordinal = ordinal
        self.returncode = returncode
        super().__init__(f"Hook [{ordinal}] {script} failed with return code {returncode}")


class Verification_Error(Pi_Imager_Error):
    category = "VerificationFailed"
