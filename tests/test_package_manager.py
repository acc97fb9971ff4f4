import pytest

from pi_imager.exceptions import Package_Operation_Failed_Error
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.package_manager import Package_Manager


@pytest.fixture
def session(build_cfg_factory):
    return Build_Session.from_config(build_cfg_factory())


@pytest.fixture
def package_manager(session, executor):
    return Package_Manager(session=session, shell_executor=executor)


class TestInstall:
    def test_update_then_install_in_order(self, package_manager, session, executor):
        package_manager.install(["avahi-daemon", "cmake"])

        root = str(session.mount_point)
        assert executor.commands == [
            ["chroot", root, "apt-get", "update"],
            ["chroot", root, "apt-get", "install", "-y", "avahi-daemon", "cmake"],
        ]
        assert all(env["DEBIAN_FRONTEND"] == "noninteractive" for env in executor.envs)
        assert (session.mount_point / "var" / "lib" / "dpkg" / "info" / "cmake.list").is_file()

    def test_nothing_to_install(self, package_manager, executor, capsys):
        package_manager.install([])

        assert executor.commands == []
        assert "No packages to install" in capsys.readouterr().out

    def test_failure_carries_sub_command_and_packages(self, package_manager, executor):
        executor.fail_on = {"install": 100}

        with pytest.raises(Package_Operation_Failed_Error) as exc_info:
            package_manager.install(["cmake", "g++"])

        assert exc_info.value.sub_command == "install"
        assert exc_info.value.packages == ["cmake", "g++"]
        assert exc_info.value.returncode == 100
        assert str(exc_info.value).startswith("PackageOperationFailed: ")


class TestPurge:
    def test_empty_list_never_calls_apt(self, package_manager, executor, capsys):
        package_manager.purge([])

        assert executor.commands == []
        assert "No packages to purge" in capsys.readouterr().out

    def test_purge_sequence(self, package_manager, session, executor):
        package_manager.purge(["cmake"])

        root = str(session.mount_point)
        assert executor.commands == [
            ["chroot", root, "apt-get", "update"],
            ["chroot", root, "apt-get", "purge", "-y", "cmake"],
            ["chroot", root, "apt-get", "autoremove", "-y"],
            ["chroot", root, "apt-get", "clean"],
        ]

    def test_failing_autoremove_stops_the_sequence(self, package_manager, executor):
        executor.fail_on = {"autoremove": 1}

        with pytest.raises(Package_Operation_Failed_Error) as exc_info:
            package_manager.purge(["cmake"])

        assert exc_info.value.sub_command == "autoremove"
        assert not executor.ran("clean")
