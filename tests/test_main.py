import os
import yaml
import pytest

import pi_imager.main as pi_imager_main


def run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        pi_imager_main.main(argv)
    return exc_info.value.code


class TestShowConfig:
    def test_password_is_masked(self, capsys):
        pi_imager_main.main(
            ["show-config", "--mode", "base", "--baseimage", "/images/a.img", "--output", "/work", "--password", "pw1"]
        )

        out = capsys.readouterr().out
        assert "pw1" not in out
        shown = yaml.safe_load(out)
        assert shown["password"] == "****"
        assert shown["mode"] == "base"

    def test_command_line_overrides_the_file(self, tmp_path, write_file, capsys):
        cfg_file = write_file(
            "cfg/build.yml",
            "mode: base\nbase_image: images/a.img\noutput: /work\nextend_size_mb: 100\nhooks:\n  - hooks/a.sh\n",
        )

        pi_imager_main.main(
            ["show-config", "--config", str(cfg_file), "--extend-size-mb", "200", "--hook", "/hooks/b.sh", "--debug"]
        )

        shown = yaml.safe_load(capsys.readouterr().out)
        assert shown["extend_size_mb"] == 200
        assert shown["base_image"] == str(tmp_path / "cfg" / "images" / "a.img")
        assert shown["hooks"] == [str(tmp_path / "cfg" / "hooks" / "a.sh"), "/hooks/b.sh"]
        assert shown["debug"] is True
        assert shown["resume"] is False

    def test_relative_command_line_paths(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)

        pi_imager_main.main(["show-config", "-m", "incremental", "-b", "base.img", "-o", "out"])

        shown = yaml.safe_load(capsys.readouterr().out)
        assert shown["base_image"] == str(tmp_path / "base.img")
        assert shown["output"] == str(tmp_path / "out")


class TestErrors:
    def test_invalid_mode(self, capsys):
        code = run_main(["show-config", "--mode", "full", "--baseimage", "/a.img", "--output", "/work"])

        assert code == 1
        assert "InvalidMode: Invalid build mode 'full'" in capsys.readouterr().out

    def test_validation_error_names_the_node(self, capsys):
        code = run_main(
            ["show-config", "--mode", "base", "--baseimage", "/a.img", "--output", "/work", "--extend-size-mb", "-5"]
        )

        assert code == 1
        assert "'extend_size_mb'" in capsys.readouterr().out

    def test_missing_setting(self, capsys):
        code = run_main(["show-config", "--mode", "base", "--output", "/work"])

        assert code == 1
        assert "'base_image'" in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path, capsys):
        code = run_main(["show-config", "--config", str(tmp_path / "missing.yml")])

        assert code == 1
        assert "ConfigNotFound" in capsys.readouterr().out

    def test_missing_command(self, capsys):
        assert run_main([]) == 1

    def test_build_requires_root(self, build_cfg_factory, monkeypatch, capsys):
        build_cfg = build_cfg_factory()
        monkeypatch.setattr(os, "geteuid", lambda: 1000)

        code = run_main(
            [
                "build",
                "--mode",
                "base",
                "--baseimage",
                build_cfg.base_image,
                "--output",
                build_cfg.output,
                "--emulator",
                build_cfg.emulator,
            ]
        )

        assert code == 1
        assert "PrerequisiteMissing" in capsys.readouterr().out


class TestCleanup:
    def test_debug_session_is_torn_down(self, tmp_path, executor, monkeypatch):
        work_dir = tmp_path / "work"
        (work_dir / "mnt").mkdir(parents=True)
        (work_dir / ".mount-point").write_text(f"{work_dir / 'mnt'}\n")
        (work_dir / "loop_device").write_text("/dev/loop9\n")
        (work_dir / "cleanup.sh").write_text("#!/bin/bash\n")
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        monkeypatch.setattr(pi_imager_main, "Shell_Executor", lambda: executor)

        pi_imager_main.main(["cleanup", "--output", str(work_dir)])

        assert executor.commands[-1] == ["losetup", "-d", "/dev/loop9"]
        assert not (work_dir / ".mount-point").exists()
        assert not (work_dir / "loop_device").exists()
        assert not (work_dir / "cleanup.sh").exists()
        assert not (work_dir / "mnt").exists()

    def test_nothing_to_clean_up(self, tmp_path, capsys):
        pi_imager_main.main(["cleanup", "--output", str(tmp_path / "missing")])
        assert "Nothing to clean up" in capsys.readouterr().out
