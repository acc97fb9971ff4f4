import pytest

from pi_imager.exceptions import Hook_Failed_Error
from raspberrypi_support.build_session import Build_Session
from raspberrypi_support.hook_executor import Hook_Executor
from raspberrypi_support.raspberrypi_image_model import Hook_Spec


@pytest.fixture
def session(build_cfg_factory):
    session = Build_Session.from_config(build_cfg_factory(mode="incremental", password="s3cret", debug=True))
    (session.mount_point / "tmp").mkdir(parents=True)
    return session


@pytest.fixture
def hook_executor(session, executor):
    return Hook_Executor(session=session, shell_executor=executor)


@pytest.fixture
def script(write_file):
    return write_file("hooks/install-thing.sh", "#!/bin/bash\necho install\n", executable=True)


class TestBuildEnv:
    def test_simple_hook(self, hook_executor, session, script):
        env = hook_executor.build_env(Hook_Spec(script=str(script)))

        assert env == {
            "MOUNT_POINT": str(session.mount_point),
            "PI_PASSWORD": "s3cret",
            "IMAGE_WORK_DIR": str(session.work_dir),
        }

    def test_parameterized_hook(self, hook_executor, script):
        hook = Hook_Spec(
            script=str(script),
            source="https://example.com/org/Thing.git",
            revision="v2.0",
            install_dest="/opt/thing",
            dep_list="cmake,g++",
        )

        env = hook_executor.build_env(hook)

        assert env["HOOK_GIT_REPO"] == "https://example.com/org/Thing.git"
        assert env["HOOK_GIT_TAG"] == "v2.0"
        assert env["HOOK_INSTALL_DEST"] == "/opt/thing"
        assert env["HOOK_NAME"] == "Thing"
        assert env["HOOK_DEP_LIST"] == "cmake,g++"
        assert env["DEBUG_MODE"] == "1"
        assert "HOOK_LOCAL_SOURCE" not in env
        assert "HOOK_POST_INSTALL_CMDS" not in env

    def test_local_source(self, hook_executor, script):
        hook = Hook_Spec(
            script=str(script),
            source="file:///tmp/src",
            revision="",
            install_dest="/opt/src",
            dep_list="",
            post_install="systemctl enable src",
        )

        env = hook_executor.build_env(hook)

        assert env["HOOK_LOCAL_SOURCE"] == "/tmp/hook-sources/src"
        assert env["HOOK_NAME"] == "src"
        assert env["HOOK_POST_INSTALL_CMDS"] == "systemctl enable src"

    def test_empty_password(self, build_cfg_factory, executor, script):
        session = Build_Session.from_config(build_cfg_factory(mode="incremental"))
        env = Hook_Executor(session=session, shell_executor=executor).build_env(Hook_Spec(script=str(script)))
        assert env["PI_PASSWORD"] == ""


class TestRunHook:
    def test_script_runs_in_the_chroot_and_is_removed(self, hook_executor, session, executor, script):
        assert hook_executor.run_hook(Hook_Spec(script=str(script)), ordinal=1)

        assert executor.commands == [["chroot", str(session.mount_point), "/bin/bash", "/tmp/install-thing.sh"]]
        assert executor.envs[0]["MOUNT_POINT"] == str(session.mount_point)
        assert not (session.mount_point / "tmp" / "install-thing.sh").exists()

    def test_failed_script_stays_in_the_image(self, hook_executor, session, executor, script):
        executor.fail_on = {"/tmp/install-thing.sh": 3}

        with pytest.raises(Hook_Failed_Error) as exc_info:
            hook_executor.run_hook(Hook_Spec(script=str(script)), ordinal=4)

        assert exc_info.value.ordinal == 4
        assert exc_info.value.returncode == 3
        assert exc_info.value.script == script
        assert (session.mount_point / "tmp" / "install-thing.sh").is_file()

    def test_script_without_execute_permission(self, hook_executor, session, executor, write_file, capsys):
        script = write_file("hooks/plain.sh", "#!/bin/bash\n")
        copies = []
        executor.hook_actions["plain.sh"] = lambda root, env: copies.append(
            (root / "tmp" / "plain.sh").stat().st_mode & 0o111
        )

        hook_executor.run_hook(Hook_Spec(script=str(script)), ordinal=1)

        assert copies and copies[0]
        assert "is not executable" in capsys.readouterr().out

    def test_local_source_is_copied_into_the_image(self, hook_executor, session, tmp_path, write_file, script):
        write_file("src/app/main.c", "int main(void) { return 0; }\n")
        hook = Hook_Spec(
            script=str(script),
            source=f"file://{tmp_path / 'src' / 'app'}",
            revision="",
            install_dest="/opt/app",
            dep_list="",
        )

        hook_executor.run_hook(hook, ordinal=1)

        assert (session.mount_point / "tmp" / "hook-sources" / "app" / "main.c").is_file()

    def test_existing_marker_skips_the_hook(self, hook_executor, session, executor, script):
        (session.mount_point / "etc").mkdir(parents=True, exist_ok=True)
        (session.mount_point / "etc" / "thing.done").touch()

        ran = hook_executor.run_hook(Hook_Spec(script=str(script), marker="/etc/thing.done"), ordinal=1)

        assert not ran
        assert executor.commands == []

    def test_marker_is_created_after_success(self, hook_executor, session, script):
        hook_executor.run_hook(Hook_Spec(script=str(script), marker="/var/lib/thing/installed"), ordinal=1)
        assert (session.mount_point / "var" / "lib" / "thing" / "installed").is_file()

    def test_marker_is_not_created_after_failure(self, hook_executor, session, executor, script):
        executor.fail_on = {"/tmp/install-thing.sh": 1}
        with pytest.raises(Hook_Failed_Error):
            hook_executor.run_hook(Hook_Spec(script=str(script), marker="/etc/thing.done"), ordinal=1)
        assert not (session.mount_point / "etc" / "thing.done").exists()
