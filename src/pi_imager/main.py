import os
import sys
import pathlib
import importlib.metadata
import argparse
import yaml
import pydantic

import pi_imager.pretty_print as pretty_print
from pi_imager.configuration_compiler import Configuration_Compiler
from pi_imager.session_lock import Session_Lock
from pi_imager.shell_executor import Shell_Executor
from pi_imager.exceptions import Pi_Imager_Error, Invalid_Mode_Error, Prerequisite_Missing_Error
from raspberrypi_support.raspberrypi_image_model import RaspberryPi_Image_Model, resolve_relative_paths
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.chroot_session import Chroot_Session
from raspberrypi_support.raspberrypi_image_builder import RaspberryPi_Image_Builder

supported_modes = ["base", "incremental"]

# Command line options that correspond to a setting of the build configuration
cfg_options = {
    "mode": "mode",
    "baseimage": "base_image",
    "output": "output",
    "password": "password",
    "extend_size_mb": "extend_size_mb",
    "runtime_deps": "runtime_deps",
    "build_deps": "build_deps",
    "hook_list": "hook_list",
    "hook": "hooks",
    "post_build_script": "post_build_script",
    "keep_build_deps": "keep_build_deps",
    "debug": "debug",
    "resume": "resume",
    "yes": "assume_yes",
    "emulator": "emulator",
}


def get_version() -> str:
    try:
        return importlib.metadata.version("pi-imager")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def compile_build_config(args: dict) -> dict:
    """
    Assembles the build configuration from the configuration file and the command line. Command line values
    take precedence, hooks from the command line are appended to the hooks of the file.

    Args:
        args:
            Parsed command line arguments.

    Returns:
        The build configuration as a dictionary with absolute paths.

    Raises:
        Config_Not_Found_Error:
            If a configuration file does not exist.
        Configuration_Error:
            If the configuration file cannot be compiled.
        Invalid_Mode_Error:
            If the build mode is not supported.
    """

    build_cfg = {}
    if args.get("config"):
        build_cfg, _ = Configuration_Compiler.compile(
            root_cfg_file=pathlib.Path(args["config"]), path_resolver=resolve_relative_paths
        )

    cli_layer = {}
    for option, key in cfg_options.items():
        if args.get(option) is not None:
            cli_layer[key] = args[option]
    cli_layer = resolve_relative_paths(cli_layer, pathlib.Path.cwd())
    build_cfg = Configuration_Compiler.merge_dicts(target=build_cfg, source=cli_layer)

    if "mode" in build_cfg and build_cfg["mode"] not in supported_modes:
        raise Invalid_Mode_Error(build_cfg["mode"])

    return build_cfg


def print_validation_errors(e: pydantic.ValidationError):
    for err in e.errors():
        keys = []
        for item in err["loc"]:
            if isinstance(item, str):
                # If the item is a string, just append it
                keys.append(item)
            if isinstance(item, int) and keys:
                # If the item is an integer, it is an index in a list
                keys[-1] = f"{keys[-1]}[{item}]"
        pretty_print.print_error(
            f"The following error occured while analyzing node '{' -> '.join(keys)}' "
            f"of the build configuration: {err['msg']}"
        )


def load_build_config(args: dict) -> RaspberryPi_Image_Model:
    build_cfg = compile_build_config(args)
    build_cfg_model = RaspberryPi_Image_Model(**build_cfg)
    if build_cfg_model.password:
        pretty_print.register_secret(build_cfg_model.password)
    return build_cfg_model


def build(args: dict):
    build_cfg_model = load_build_config(args)
    session = Build_Session.from_config(build_cfg_model)
    builder = RaspberryPi_Image_Builder(session=session, shell_executor=Shell_Executor())
    if args.get("raw_output"):
        builder.shell_executor.prohibit_output_processing(state=True)
    if args.get("print_commands"):
        builder.shell_executor.enforce_command_printing(state=True)

    builder.print_config_summary()
    builder.check_host()
    builder.build()


def show_config(args: dict):
    build_cfg_model = load_build_config(args)
    build_cfg = build_cfg_model.model_dump()
    if build_cfg["password"]:
        build_cfg["password"] = "****"
    print(yaml.dump(build_cfg, sort_keys=False), end="")


def cleanup(args: dict):
    work_dir = pathlib.Path(args["output"]).absolute()
    if not work_dir.is_dir():
        pretty_print.print_info(f"Nothing to clean up. {work_dir} does not exist.")
        return
    if os.geteuid() != 0:
        raise Prerequisite_Missing_Error("Cleaning up requires root privileges. Please use sudo.")

    shell_executor = Shell_Executor()
    with Session_Lock(work_dir=work_dir):
        Chroot_Session.cleanup_work_dir(work_dir=work_dir, shell_executor=shell_executor)
    pretty_print.print_info(f"Cleaned up {work_dir}")


# Options that describe a build, shared by the commands that work with a build configuration
cfg_parser = argparse.ArgumentParser(add_help=False)
cfg_parser.add_argument("-c", "--config", help="YAML build configuration file")
cfg_parser.add_argument("-m", "--mode", help="Build mode: 'base' or 'incremental'")
cfg_parser.add_argument("-b", "--baseimage", help="Source image (.img or .img.xz) or http(s) URL")
cfg_parser.add_argument("-o", "--output", help="Working directory")
cfg_parser.add_argument("--password", help="New password for user 'pi'")
cfg_parser.add_argument("--extend-size-mb", type=int, help="Extend the image by this many MiB (base mode)")
cfg_parser.add_argument("--runtime-deps", help="File with runtime packages or 'none'")
cfg_parser.add_argument("--build-deps", help="File with build packages or 'none'")
cfg_parser.add_argument("--hook-list", help="File with one hook record per line")
cfg_parser.add_argument(
    "--hook",
    action="append",
    help="Hook record 'script' or 'script|source|revision|install dest|dep list[|post-install cmds]' (repeatable)",
)
cfg_parser.add_argument("--post-build-script", help="Script executed after all hooks (incremental mode)")
cfg_parser.add_argument("--emulator", help="User-mode emulator on the host")
cfg_parser.add_argument(
    "--keep-build-deps", action="store_true", default=None, help="Do not purge the build dependencies"
)
cfg_parser.add_argument(
    "--debug", action="store_true", default=None, help="Keep the image mounted if the build fails"
)
cfg_parser.add_argument(
    "--resume", action="store_true", default=None, help="Skip steps that completed in a previous run"
)
cfg_parser.add_argument("-y", "--yes", action="store_true", default=None, help="Answer all questions with yes")

# Create argument parser
cli = argparse.ArgumentParser(prog="pi-imager", description="pi-imager - Raspberry Pi OS image customization")
cli_cmds = cli.add_subparsers(title="commands", dest="command")

# Add arguments
cli.add_argument(
    "-v",
    "--version",
    action="store_true",
    help="Print the version of pi-imager and exit",
)
cli.add_argument(
    "-r",
    "--raw-output",
    action="store_true",
    help="Disable processing of shell output from build tools before it is shown (Recommended for CI/CD)",
)
cli.add_argument(
    "-p",
    "--print-commands",
    action="store_true",
    help="Enforce printing of shell commands before they are executed",
)

cli_cmds.add_parser("build", parents=[cfg_parser], help="Build an image")
cli_cmds.add_parser(
    "show-config", parents=[cfg_parser], help="Print the complete build configuration to the standard output"
)
cli_cleanup = cli_cmds.add_parser("cleanup", help="Tear down a session that was kept for debugging")
cli_cleanup.add_argument("-o", "--output", required=True, help="Working directory of the session")

commands = {"build": build, "show-config": show_config, "cleanup": cleanup}

# Do tab completion
try:
    import argcomplete

    argcomplete.autocomplete(cli, always_complete_options=False)
except ImportError:
    pass


def main(argv=None):
    """
    The main method and the entry point to the pi-imager command-line interface
    """

    # Initialize argument parser
    args = vars(cli.parse_args(argv))

    # Check for arguments that can be processed directly here
    if args.get("version"):
        print(f"pi-imager {get_version()}")
        cli.exit()
    if not args.get("command"):
        cli.print_usage()
        pretty_print.print_error("The following argument is required: command.")
        sys.exit(1)

    try:
        commands[args["command"]](args)
    except pydantic.ValidationError as e:
        print_validation_errors(e)
        sys.exit(1)
    except Pi_Imager_Error as e:
        pretty_print.print_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pretty_print.print_error("Interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
