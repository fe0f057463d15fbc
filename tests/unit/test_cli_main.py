"""Unit tests for the vmsandbox CLI."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from vmsandbox import __version__
from vmsandbox.cli.main import app
from vmsandbox.vm.guest_control import IsolationCheck, IsolationReport


@pytest.fixture
def runner():
    """CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("vmsandbox.cli.main.configure_logging", lambda level=None: None)


@pytest.fixture
def cli_settings(test_settings, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("vmsandbox.cli.main.get_settings", lambda: test_settings)
    return test_settings


class TestMainApp:
    """Test main CLI app registration."""

    def test_app_name(self):
        assert app.info.name == "vmsandbox"

    def test_app_help(self, runner):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "Disposable VM sandbox" in result.output
        for command in ("args", "disk", "run", "relay", "drop-server", "backup-daemon", "verify", "version"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestArgsCommand:
    def test_prints_command_line(self, runner, cli_settings):
        result = runner.invoke(app, ["args"])

        assert result.exit_code == 0
        line = result.stdout.strip()
        assert line.startswith("vfkit ")
        assert "virtio-fs,sharedDir=" in line
        assert "--restful-uri tcp://localhost:7777" in line
        assert str(cli_settings.sessions_dir / "SESSION_ID.img") in line
        assert str(cli_settings.master_disk_path) not in line
        assert "test-key" not in line

    def test_explicit_disk(self, runner, cli_settings, tmp_path: Path):
        result = runner.invoke(app, ["args", "--disk", str(tmp_path / "other.img")])
        assert result.exit_code == 0
        assert "other.img" in result.stdout

    def test_master_disk_rejected(self, runner, cli_settings):
        result = runner.invoke(app, ["args", "--disk", str(cli_settings.master_disk_path)])
        assert result.exit_code == 1
        assert "shared master image" in result.output


class TestRunCommand:
    def test_master_disk_rejected(self, runner, cli_settings):
        result = runner.invoke(app, ["run", "--disk", str(cli_settings.master_disk_path)])
        assert result.exit_code == 1
        assert "shared master image" in result.output


class TestDiskCommand:
    def test_copies_master(self, runner, cli_settings):
        cli_settings.master_disk_path.parent.mkdir(parents=True)
        cli_settings.master_disk_path.write_bytes(b"rootfs")

        result = runner.invoke(app, ["disk", "--session-id", "abc123"])

        assert result.exit_code == 0
        copy = cli_settings.sessions_dir / "abc123.img"
        assert result.stdout.strip() == str(copy)
        assert copy.read_bytes() == b"rootfs"

    def test_missing_master(self, runner, cli_settings):
        result = runner.invoke(app, ["disk"])
        assert result.exit_code == 1
        assert "master_disk_path does not exist" in result.output


class TestVerifyCommand:
    def _patch_report(self, monkeypatch, report: IsolationReport):
        async def fake_verify(channel, drop_mount_point, **kwargs):
            return report

        monkeypatch.setattr("vmsandbox.vm.guest_control.verify_isolation", fake_verify)

    def test_all_pass(self, runner, cli_settings, monkeypatch):
        self._patch_report(
            monkeypatch,
            IsolationReport(checks=[IsolationCheck(name="no direct internet", passed=True)]),
        )
        result = runner.invoke(app, ["verify"])
        assert result.exit_code == 0
        assert "PASS" in result.output

    def test_failure_exit_code(self, runner, cli_settings, monkeypatch):
        self._patch_report(
            monkeypatch,
            IsolationReport(checks=[IsolationCheck(name="drop folder readable", passed=False)]),
        )
        result = runner.invoke(app, ["verify"])
        assert result.exit_code == 1
        assert "FAIL" in result.output


class TestBackupDaemonCommand:
    def test_missing_repository(self, runner, cli_settings, tmp_path: Path):
        result = runner.invoke(app, ["backup-daemon", str(tmp_path / "missing")])
        assert result.exit_code == 2
