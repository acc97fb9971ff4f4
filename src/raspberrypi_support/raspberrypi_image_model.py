import os
import re
import pathlib
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, Literal, Union, List, Dict, Any
from typing_extensions import Annotated

from pi_imager.file_downloader import File_Downloader

# Prefix of hook source references that point to a local source tree instead of a git repository
LOCAL_SOURCE_PREFIX = "file://"

# Value that disables a dependency set when it is given instead of a file
DISABLED_REFERENCE = "none"


class Hook_Spec(BaseModel):
    """
    One unit of customization that is executed inside the chroot. A hook is either simple (script only) or
    parameterized (script, source, revision, install destination and dependency list are all present, even if
    some of them are empty strings).
    """

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    script: str = Field(default=..., description="Absolute path of the hook script on the host")
    source: Optional[str] = Field(
        default=None, description="Git repository URL or 'file://' path of a local source tree"
    )
    revision: Optional[str] = Field(default=None, description="Git tag or branch (ignored for local sources)")
    install_dest: Optional[str] = Field(default=None, description="Installation destination inside the image")
    dep_list: Optional[str] = Field(default=None, description="Comma separated list of packages the hook needs")
    post_install: Optional[str] = Field(default=None, description="Commands to be run after the installation")
    marker: Optional[str] = Field(
        default=None,
        description="Path inside the image that marks this hook as completed. "
        "If it exists, the hook is skipped. It is created after the hook succeeded.",
    )

    @model_validator(mode="after")
    def complete_parameterization(self):
        params = (self.source, self.revision, self.install_dest, self.dep_list)
        if any(param is not None for param in params) and not all(param is not None for param in params):
            raise ValueError(
                "A parameterized hook requires 'source', 'revision', 'install_dest' and 'dep_list' "
                "(empty values are allowed)"
            )
        if self.post_install is not None and self.source is None:
            raise ValueError("'post_install' is only allowed for parameterized hooks")
        if self.source is not None and self.source.startswith(LOCAL_SOURCE_PREFIX):
            if not self.source[len(LOCAL_SOURCE_PREFIX) :].strip("/"):
                raise ValueError(f"The local source '{self.source}' does not name a directory")
        if not pathlib.PurePosixPath(self.script).is_absolute():
            raise ValueError(f"The hook script path must be absolute: {self.script}")
        return self

    @property
    def is_parameterized(self) -> bool:
        return self.source is not None

    @property
    def is_local_source(self) -> bool:
        return self.is_parameterized and self.source.startswith(LOCAL_SOURCE_PREFIX)

    @property
    def local_source_path(self) -> Optional[pathlib.Path]:
        if not self.is_local_source:
            return None
        return pathlib.Path(self.source[len(LOCAL_SOURCE_PREFIX) :])

    @property
    def name(self) -> str:
        """
        Name of the hook. For parameterized hooks it is the last path segment of the source reference without a
        '.git' suffix, for simple hooks it is the name of the script without its extension.
        """

        if not self.is_parameterized or not self.source.strip("/"):
            return pathlib.PurePosixPath(self.script).stem
        if self.is_local_source:
            return self.local_source_path.name
        segment = re.split(r"[/:]", self.source.rstrip("/"))[-1]
        if segment.endswith(".git"):
            segment = segment[: -len(".git")]
        return segment

    @property
    def dependencies(self) -> List[str]:
        if not self.dep_list:
            return []
        return [pkg.strip() for pkg in self.dep_list.split(",") if pkg.strip()]


class Dependency_Set(BaseModel):
    """
    A named, ordered list of packages
    """

    model_config = ConfigDict(extra="forbid", strict=True)

    name: str = Field(default=..., description="Name used in messages")
    intent: Literal["runtime", "build"] = Field(
        default=...,
        description="'runtime' packages stay in the final image. 'build' packages are installed in the base image "
        "and purged at the end of an incremental build.",
    )
    packages: List[str] = Field(default=[], description="Package names in installation order")
    enabled: bool = Field(default=True, description="False if the set was disabled with 'none' or not specified")
    source_file: Optional[str] = Field(default=None, description="File the packages were read from")


class RaspberryPi_Image_Model(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    mode: Literal["base", "incremental"] = Field(
        default=...,
        description="'base' installs runtime and build packages into a fresh image. "
        "'incremental' starts from a base image, runs hooks and purges the build packages.",
    )
    base_image: str = Field(
        default=..., description="Path or http(s) URL of the source image (.img or .img.xz)"
    )
    output: str = Field(default=..., description="Working directory for the image customization")
    password: Optional[str] = Field(
        default=None, description="New password for user 'pi'. The existing password is kept if not specified."
    )
    extend_size_mb: Annotated[int, Field(strict=True, ge=0)] = Field(
        default=0, description="Size in MiB by which the image is extended (base mode only)"
    )
    runtime_deps: Optional[str] = Field(
        default=None, description="File with packages that stay in the image, or 'none'"
    )
    build_deps: Optional[str] = Field(
        default=None, description="File with packages that are only needed for building, or 'none'"
    )
    hook_list: Optional[str] = Field(default=None, description="File with one hook record per line")
    hooks: List[Union[str, Dict[str, Any]]] = Field(
        default=[], description="Additional hooks, executed after the hooks of the hook list"
    )
    post_build_script: Optional[str] = Field(
        default=None, description="System wide configuration script executed after all hooks"
    )
    keep_build_deps: bool = Field(default=False, description="Do not purge the build packages in incremental mode")
    debug: bool = Field(
        default=False, description="Keep the chroot mounted for inspection if the build fails"
    )
    resume: bool = Field(
        default=False, description="Skip steps that already completed successfully in the same working directory"
    )
    assume_yes: bool = Field(default=False, description="Answer all confirmation prompts with yes")
    emulator: str = Field(
        default="/usr/bin/qemu-aarch64-static", description="Statically linked user-mode emulator on the host"
    )
    min_free_space_mb: Annotated[int, Field(strict=True, ge=0)] = Field(
        default=5000, description="Free space in MiB below which the user is asked for confirmation"
    )


def is_remote_reference(reference: str) -> bool:
    return File_Downloader.is_url(reference)


def resolve_local_source(source: str, base_dir: pathlib.Path) -> str:
    """
    Makes the path of a 'file://' hook source absolute. Other sources are returned unchanged.

    Args:
        source:
            Source reference of a hook.
        base_dir:
            Directory against which a relative path is resolved.

    Returns:
        The source reference.

    Raises:
        None
    """

    if not source.startswith(LOCAL_SOURCE_PREFIX):
        return source
    path = source[len(LOCAL_SOURCE_PREFIX) :]
    if not path.strip("/"):
        return source
    path = pathlib.Path(path).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return LOCAL_SOURCE_PREFIX + os.path.normpath(path)


def resolve_relative_paths(cfg_layer: dict, base_dir: pathlib.Path) -> dict:
    """
    Makes all relative paths in one layer of the build configuration absolute.

    Args:
        cfg_layer:
            Configuration layer as read from a YAML file or assembled from the command line.
        base_dir:
            Directory against which relative paths are resolved.

    Returns:
        The configuration layer with absolute paths.

    Raises:
        None
    """

    def resolve(value):
        if not isinstance(value, str) or not value or value == DISABLED_REFERENCE or is_remote_reference(value):
            return value
        path = pathlib.Path(value).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        return os.path.normpath(path)

    for key in ("base_image", "output", "runtime_deps", "build_deps", "hook_list", "post_build_script", "emulator"):
        if key in cfg_layer:
            cfg_layer[key] = resolve(cfg_layer[key])

    hooks = cfg_layer.get("hooks")
    if isinstance(hooks, list):
        resolved_hooks = []
        for hook in hooks:
            if isinstance(hook, str):
                fields = hook.split("|")
                fields[0] = resolve(fields[0].strip())
                if len(fields) > 1:
                    fields[1] = resolve_local_source(fields[1].strip(), base_dir)
                hook = "|".join(fields)
            elif isinstance(hook, dict) and "script" in hook:
                hook = dict(hook, script=resolve(hook["script"]))
                if isinstance(hook.get("source"), str):
                    hook["source"] = resolve_local_source(hook["source"], base_dir)
            resolved_hooks.append(hook)
        cfg_layer["hooks"] = resolved_hooks

    return cfg_layer
