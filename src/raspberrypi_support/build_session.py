import pathlib
import typing
import urllib.parse

from pi_imager.exceptions import Configuration_Error
from raspberrypi_support.raspberrypi_image_model import (
    RaspberryPi_Image_Model,
    Dependency_Set,
    Hook_Spec,
    is_remote_reference,
)
from raspberrypi_support.dependency_list_parser import Dependency_List_Parser
from raspberrypi_support.hook_list_parser import Hook_List_Parser


class Build_Session:
    """
    State of one image build. The attached loop device is the only state that is changed while the session is
    active. It is mirrored to a marker file in the working directory so that it can be detached after a crash.
    """

    loop_device_file_name = "loop_device"

    def __init__(
        self,
        build_cfg: RaspberryPi_Image_Model,
        runtime_deps: Dependency_Set,
        build_deps: Dependency_Set,
        hooks: typing.List[Hook_Spec],
    ):
        self.build_cfg = build_cfg
        self.mode = build_cfg.mode
        self.source_image = build_cfg.base_image
        self.work_dir = pathlib.Path(build_cfg.output)
        self.mount_point = self.work_dir / "mnt"
        self.log_dir = self.work_dir / "logs"
        self.download_dir = self.work_dir / "download"
        self.image_file = self.work_dir / self.image_name_from_reference(build_cfg.base_image)
        self.password = build_cfg.password or ""
        self.extend_size_mb = build_cfg.extend_size_mb
        self.runtime_deps = runtime_deps
        self.build_deps = build_deps
        self.hooks = tuple(hooks)
        self.post_build_script = (
            pathlib.Path(build_cfg.post_build_script) if build_cfg.post_build_script is not None else None
        )
        self.emulator = pathlib.Path(build_cfg.emulator)
        self.debug = build_cfg.debug
        self.keep_build_deps = build_cfg.keep_build_deps
        self.resume = build_cfg.resume
        self.loop_device = None

    @staticmethod
    def image_name_from_reference(reference: str) -> str:
        """
        Derives the name of the working image from the source image. A '.xz' suffix is removed.

        Args:
            reference:
                Path or URL of the source image.

        Returns:
            File name of the working image.

        Raises:
            Configuration_Error:
                If no file name can be derived.
        """

        if is_remote_reference(reference):
            name = pathlib.PurePosixPath(urllib.parse.urlparse(reference).path).name
        else:
            name = pathlib.Path(reference).name
        if name.endswith(".xz"):
            name = name[: -len(".xz")]
        if not name:
            raise Configuration_Error(f"Unable to derive an image name from {reference}")
        return name

    @classmethod
    def from_config(cls, build_cfg: RaspberryPi_Image_Model, cfg_dir: pathlib.Path = None) -> "Build_Session":
        """
        Creates a session from a validated build configuration. Reads the dependency files and the hook list.

        Args:
            build_cfg:
                The build configuration. All paths are expected to be absolute.
            cfg_dir:
                Directory against which relative script paths of inline hooks are resolved. Defaults to the
                current working directory.

        Returns:
            The session.

        Raises:
            Config_Not_Found_Error:
                If a dependency file or the hook list does not exist.
            Malformed_Hook_Line_Error:
                If a hook record is malformed.
            Hook_Script_Not_Found_Error:
                If a hook script does not exist.
        """

        if cfg_dir is None:
            cfg_dir = pathlib.Path.cwd()

        runtime_deps = Dependency_List_Parser.parse(
            build_cfg.runtime_deps, name="runtime dependencies", intent="runtime"
        )
        build_deps = Dependency_List_Parser.parse(build_cfg.build_deps, name="build dependencies", intent="build")

        # Hooks of the hook list come first, followed by the inline hooks
        hooks = []
        if build_cfg.hook_list is not None:
            hooks = Hook_List_Parser.parse(pathlib.Path(build_cfg.hook_list), hooks=hooks)
        for index, hook in enumerate(build_cfg.hooks, start=1):
            if isinstance(hook, str):
                hooks.append(
                    Hook_List_Parser.parse_record(hook.strip(), base_dir=cfg_dir, source="hooks", line_nr=index)
                )
            else:
                hooks.append(Hook_List_Parser.parse_entry(hook, base_dir=cfg_dir, source="hooks", line_nr=index))

        return cls(build_cfg=build_cfg, runtime_deps=runtime_deps, build_deps=build_deps, hooks=hooks)

    @property
    def loop_device_file(self) -> pathlib.Path:
        return self.work_dir / self.loop_device_file_name

    def attach_loop_device(self, loop_device: str):
        self.loop_device = loop_device
        self.loop_device_file.parent.mkdir(parents=True, exist_ok=True)
        self.loop_device_file.write_text(f"{loop_device}\n")

    def detach_loop_device(self):
        self.loop_device = None
        self.loop_device_file.unlink(missing_ok=True)

    def recorded_loop_device(self) -> typing.Optional[str]:
        """
        Returns the attached loop device. If this session did not attach one, the marker file of a previous
        session is consulted.

        Args:
            None

        Returns:
            Path of the loop device or None if nothing is attached.

        Raises:
            None
        """

        if self.loop_device is not None:
            return self.loop_device
        if self.loop_device_file.is_file():
            return self.loop_device_file.read_text().strip() or None
        return None
