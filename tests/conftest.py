import pathlib
import subprocess
import typing
import pytest

import pi_imager.pretty_print as pretty_print
from raspberrypi_support.raspberrypi_image_model import RaspberryPi_Image_Model

SHADOW = "root:*:19000:0:99999:7:::\npi:$6$old$hash:19000:0:99999:7:::\n"
SSHD_CONFIG = "#PasswordAuthentication yes\nPermitRootLogin prohibit-password\n"


class Recording_Shell_Executor:
    """
    Stands in for Shell_Executor. Records every command and emulates the effects the build relies on:
    losetup creates partition nodes, mounting the root partition creates a minimal root file system and
    apt-get install/purge create/remove the dpkg file lists of the packages.
    """

    def __init__(self, tmp_path: pathlib.Path):
        self.commands = []
        self.envs = []
        self.inputs = []
        self.loop_device = str(tmp_path / "dev" / "loop7")
        self.create_partitions = True
        self.losetup_j_output = ""
        self.password_hash = "$6$salt$newhash"
        # Command element -> return code
        self.fail_on = {}
        # Script name inside the chroot -> callable(root, env)
        self.hook_actions = {}
        self.output_processing_prohibited = False
        self.command_printing_enforced = False

    def prohibit_output_processing(self, state: bool):
        self.output_processing_prohibited = state

    def enforce_command_printing(self, state: bool):
        self.command_printing_enforced = state

    def command_lines(self) -> typing.List[str]:
        return [" ".join(command) for command in self.commands]

    def ran(self, *elements: str) -> bool:
        return any(all(element in command for element in elements) for command in self.commands)

    def _returncode(self, command):
        for element, returncode in self.fail_on.items():
            if element in command:
                return returncode
        return 0

    def _emulate(self, command, env) -> str:
        if command[:2] == ["losetup", "--find"]:
            if self.create_partitions:
                pathlib.Path(self.loop_device).parent.mkdir(parents=True, exist_ok=True)
                for partition in (1, 2):
                    pathlib.Path(f"{self.loop_device}p{partition}").touch()
            return self.loop_device + "\n"
        if command[:2] == ["losetup", "-j"]:
            return self.losetup_j_output
        if command[0] == "openssl":
            return self.password_hash + "\n"
        if command[0] == "mount" and command[1].endswith("p2"):
            root = pathlib.Path(command[2])
            for directory in ("bin", "etc/ssh", "home/pi", "usr/bin", "var/lib/dpkg/info", "tmp"):
                (root / directory).mkdir(parents=True, exist_ok=True)
            if not (root / "etc" / "shadow").exists():
                (root / "etc" / "shadow").write_text(SHADOW)
                (root / "etc" / "ssh" / "sshd_config").write_text(SSHD_CONFIG)
            return ""
        if command[0] == "chroot" and len(command) > 3 and command[2] == "apt-get":
            info_dir = pathlib.Path(command[1]) / "var" / "lib" / "dpkg" / "info"
            info_dir.mkdir(parents=True, exist_ok=True)
            packages = [item for item in command[4:] if not item.startswith("-")]
            for package in packages:
                if command[3] == "install":
                    (info_dir / f"{package}.list").touch()
                elif command[3] == "purge":
                    (info_dir / f"{package}.list").unlink(missing_ok=True)
            return ""
        if command[0] == "chroot" and len(command) > 3 and command[2] == "/bin/bash":
            action = self.hook_actions.get(pathlib.PurePosixPath(command[3]).name)
            if action is not None:
                action(pathlib.Path(command[1]), env)
            return ""
        return ""

    def _run(self, command, check, env, input=None):
        command = [str(item) for item in command]
        self.commands.append(command)
        self.envs.append(dict(env) if env else {})
        self.inputs.append(input)
        returncode = self._returncode(command)
        if returncode:
            if check:
                raise subprocess.CalledProcessError(returncode=returncode, cmd=command)
            return subprocess.CompletedProcess(command, returncode, "", "")
        stdout = self._emulate(command, env or {})
        return subprocess.CompletedProcess(command, 0, stdout, "")

    def get_sh_results(self, command, cwd=None, check=True, input=None, env=None):
        return self._run(command, check=check, env=env, input=input)

    def exec_sh_command(
        self,
        command,
        cwd=None,
        check=True,
        env=None,
        logfile=None,
        output_scrolling=False,
        visible_lines=30,
        print_command=False,
    ):
        return self._run(command, check=check, env=env).returncode


@pytest.fixture(autouse=True)
def reset_pretty_print():
    yield
    pretty_print.set_log_file(None)
    pretty_print.clear_secrets()


@pytest.fixture
def executor(tmp_path):
    return Recording_Shell_Executor(tmp_path)


@pytest.fixture
def write_file(tmp_path):
    def write(name: str, content: str, executable: bool = False) -> pathlib.Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if executable:
            path.chmod(0o755)
        return path

    return write


@pytest.fixture
def build_cfg_factory(tmp_path, write_file):
    """
    Creates validated build configurations with a small source image, an emulator and a working directory in
    tmp_path
    """

    source_image = write_file("images/raspios.img", "image content")
    emulator = write_file("host/qemu-aarch64-static", "emulator", executable=True)

    def factory(**overrides) -> RaspberryPi_Image_Model:
        values = {
            "mode": "base",
            "base_image": str(source_image),
            "output": str(tmp_path / "work"),
            "emulator": str(emulator),
            "min_free_space_mb": 0,
        }
        values.update(overrides)
        return RaspberryPi_Image_Model(**values)

    return factory


@pytest.fixture
def resolv_conf(write_file):
    return write_file("host/resolv.conf", "nameserver 192.0.2.1\n")
