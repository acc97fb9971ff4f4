import shlex
import pytest

from pi_imager.exceptions import (
    No_Partitions_Found_Error,
    Mount_Failed_Error,
    Emulator_Missing_Error,
    Chroot_Unusable_Error,
)
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.chroot_session import Chroot_Session


@pytest.fixture
def session(build_cfg_factory):
    session = Build_Session.from_config(build_cfg_factory())
    session.work_dir.mkdir(parents=True)
    session.image_file.write_text("image content")
    return session


@pytest.fixture
def chroot(session, executor, resolv_conf):
    return Chroot_Session(session=session, shell_executor=executor, host_resolv_conf=resolv_conf)


class TestSetup:
    def test_attach_loop_records_the_device(self, chroot, session, executor):
        loop_device = chroot.attach_loop()

        assert loop_device == executor.loop_device
        assert session.loop_device == loop_device
        assert session.loop_device_file.read_text().strip() == loop_device
        assert executor.commands[0] == ["losetup", "--find", "--show", "--partscan", str(session.image_file)]

    def test_missing_root_partition(self, chroot, executor):
        executor.create_partitions = False
        chroot.partition_wait_attempts = 2
        chroot.partition_wait_interval = 0

        with pytest.raises(No_Partitions_Found_Error) as exc_info:
            chroot.attach_loop()

        assert exc_info.value.partition == f"{executor.loop_device}p2"
        assert executor.ran("partprobe")

    def test_partitions_are_mounted_root_first(self, chroot, session, executor):
        chroot.attach_loop()
        chroot.mount_partitions()

        mounts = [command for command in executor.commands if command[0] == "mount"]
        assert mounts == [
            ["mount", f"{executor.loop_device}p2", str(session.mount_point)],
            ["mount", f"{executor.loop_device}p1", str(session.mount_point / "boot" / "firmware")],
        ]

    def test_mount_failure(self, chroot, session, executor):
        executor.fail_on = {"mount": 32}
        chroot.attach_loop()

        with pytest.raises(Mount_Failed_Error) as exc_info:
            chroot.mount_partitions()

        assert exc_info.value.target == session.mount_point

    def test_pseudo_file_systems_and_dns(self, chroot, session, executor, resolv_conf):
        chroot.attach_loop()
        chroot.mount_partitions()
        chroot.bind_pseudo_filesystems()

        binds = [command[2:] for command in executor.commands if command[:2] == ["mount", "--bind"]]
        assert binds == [
            ["/proc", str(session.mount_point / "proc")],
            ["/sys", str(session.mount_point / "sys")],
            ["/dev", str(session.mount_point / "dev")],
            ["/dev/pts", str(session.mount_point / "dev" / "pts")],
        ]
        assert (session.mount_point / "etc" / "resolv.conf").read_text() == resolv_conf.read_text()

    def test_emulator_is_installed_and_removed(self, chroot, session):
        chroot.install_emulator()

        emulator = session.mount_point / "usr" / "bin" / "qemu-aarch64-static"
        assert emulator.is_file()
        assert emulator.stat().st_mode & 0o111

        chroot.remove_emulator()
        assert not emulator.exists()

    def test_missing_emulator(self, build_cfg_factory, executor, resolv_conf, tmp_path):
        session = Build_Session.from_config(build_cfg_factory(emulator=str(tmp_path / "missing-qemu")))
        chroot = Chroot_Session(session=session, shell_executor=executor, host_resolv_conf=resolv_conf)

        with pytest.raises(Emulator_Missing_Error):
            chroot.install_emulator()

    def test_unusable_chroot(self, chroot, executor):
        executor.fail_on = {"/bin/true": 1}
        with pytest.raises(Chroot_Unusable_Error):
            chroot.verify_chroot()


class TestTeardown:
    def test_reverse_order_and_loop_device_last(self, chroot, session, executor):
        chroot.setup()
        executor.commands.clear()

        chroot.teardown()

        root = session.mount_point
        assert executor.commands == [
            ["umount", "-l", str(root / "dev" / "pts")],
            ["umount", "-l", str(root / "dev")],
            ["umount", "-l", str(root / "sys")],
            ["umount", "-l", str(root / "proc")],
            ["umount", "-l", str(root / "boot" / "firmware")],
            ["umount", "-l", str(root)],
            ["losetup", "-d", executor.loop_device],
        ]
        assert session.loop_device is None
        assert not session.loop_device_file.exists()

    def test_teardown_twice(self, chroot, session, executor):
        chroot.setup()
        chroot.teardown()
        chroot.teardown()

        assert len([command for command in executor.commands if command[:2] == ["losetup", "-d"]]) == 1
        assert not session.loop_device_file.exists()

    def test_teardown_tolerates_failing_unmounts(self, chroot, session, executor):
        chroot.setup()
        executor.fail_on = {"umount": 32, "-d": 1}

        chroot.teardown()

        assert not session.loop_device_file.exists()

    def test_teardown_without_setup(self, chroot, executor):
        chroot.teardown()
        assert not executor.ran("losetup")

    def test_loop_device_of_a_crashed_session_is_detached(self, chroot, session, executor):
        session.loop_device_file.write_text("/dev/loop3\n")

        chroot.cleanup_stale()

        assert ["losetup", "-d", "/dev/loop3"] in executor.commands
        assert not session.loop_device_file.exists()

    def test_loop_devices_still_bound_to_the_image(self, chroot, session, executor):
        executor.losetup_j_output = f"/dev/loop4: []: ({session.image_file})\n/dev/loop5: []: ({session.image_file})\n"

        chroot.cleanup_stale()

        assert ["losetup", "-j", str(session.image_file)] in executor.commands
        assert ["losetup", "-d", "/dev/loop4"] in executor.commands
        assert ["losetup", "-d", "/dev/loop5"] in executor.commands


class TestDebugSession:
    def test_markers_and_cleanup(self, chroot, session, executor):
        chroot.setup()

        cleanup_script = chroot.write_debug_markers()

        assert (session.work_dir / ".mount-point").read_text().strip() == str(session.mount_point)
        script = cleanup_script.read_text()
        assert script.startswith("#!/bin/bash")
        assert f"losetup -d {executor.loop_device} " in script
        assert script.index("dev/pts") < script.index("boot/firmware")

        executor.commands.clear()
        Chroot_Session.cleanup_work_dir(work_dir=session.work_dir, shell_executor=executor)

        assert executor.commands[-1] == ["losetup", "-d", executor.loop_device]
        assert not (session.work_dir / ".mount-point").exists()
        assert not cleanup_script.exists()
        assert not session.loop_device_file.exists()

    def test_cleanup_script_quotes_paths(self, build_cfg_factory, executor, resolv_conf, tmp_path):
        session = Build_Session.from_config(build_cfg_factory(output=str(tmp_path / "it's $(work)")))
        session.work_dir.mkdir(parents=True)
        session.attach_loop_device("/dev/loop7")
        chroot = Chroot_Session(session=session, shell_executor=executor, host_resolv_conf=resolv_conf)

        lines = chroot.write_debug_markers().read_text().splitlines()

        commands = [shlex.split(line) for line in lines if not line.startswith("#")]
        assert commands[0][:3] == ["umount", "-l", str(session.mount_point / "dev" / "pts")]
        assert ["losetup", "-d", "/dev/loop7", "2>/dev/null", "||", "true"] in commands
        assert commands[-1] == [
            "rm",
            "-f",
            str(session.loop_device_file),
            str(session.work_dir / ".mount-point"),
            str(session.work_dir / "cleanup.sh"),
        ]

    def test_cleanup_removes_an_empty_mount_point(self, tmp_path, executor):
        work_dir = tmp_path / "work"
        (work_dir / "mnt").mkdir(parents=True)

        Chroot_Session.cleanup_work_dir(work_dir=work_dir, shell_executor=executor)

        assert not (work_dir / "mnt").exists()
        assert not executor.ran("losetup")
