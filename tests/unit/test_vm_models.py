"""Unit tests for vmsandbox.vm.models."""

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from vmsandbox.vm.models import GuestEnvironment, SharedFolder, VmConfig, VmState


class TestVmState:
    def test_terminal_states(self):
        assert VmState.STOPPED.is_terminal
        assert VmState.FAILED.is_terminal

    @pytest.mark.parametrize("state", [VmState.STARTING, VmState.RUNNING, VmState.STOPPING])
    def test_live_states(self, state):
        assert not state.is_terminal


class TestSharedFolder:
    def test_tag_required(self):
        with pytest.raises(ValidationError):
            SharedFolder(host_path=Path("/tmp/x"), vm_mount_point="/mnt/x", tag="")

    def test_tag_length_limit(self):
        with pytest.raises(ValidationError):
            SharedFolder(host_path=Path("/tmp/x"), vm_mount_point="/mnt/x", tag="t" * 37)

    def test_frozen(self):
        folder = SharedFolder(host_path=Path("/tmp/x"), vm_mount_point="/mnt/x", tag="drop")
        with pytest.raises(ValidationError):
            folder.tag = "other"


class TestGuestEnvironment:
    def test_kernel_cmdline_excludes_credential(self):
        env = GuestEnvironment(
            repo_url="https://example.com/r.git",
            work_branch="feature",
            backup_branch="feature-backup",
            credential=SecretStr("sk-secret"),
        )
        cmdline = env.to_kernel_cmdline()
        assert "vmsandbox.repo=https://example.com/r.git" in cmdline
        assert "vmsandbox.branch=feature" in cmdline
        assert "vmsandbox.backup_branch=feature-backup" in cmdline
        assert "sk-secret" not in cmdline

    def test_kernel_cmdline_without_repo(self):
        assert "vmsandbox.repo" not in GuestEnvironment().to_kernel_cmdline()

    def test_env_includes_credential(self):
        env = GuestEnvironment(credential=SecretStr("sk-secret")).to_env()
        assert env["ANTHROPIC_API_KEY"] == "sk-secret"
        assert env["VMSANDBOX_WORK_BRANCH"] == "main"

    def test_env_omits_empty_credential(self):
        assert "ANTHROPIC_API_KEY" not in GuestEnvironment().to_env()

    def test_credential_not_in_repr(self):
        assert "sk-secret" not in repr(GuestEnvironment(credential=SecretStr("sk-secret")))

    def test_branches_must_differ(self):
        with pytest.raises(ValidationError):
            GuestEnvironment(work_branch="main", backup_branch="main")


class TestVmConfig:
    def test_from_settings(self, test_settings):
        config = VmConfig.from_settings(test_settings, Path("/tmp/session.img"))
        assert config.disk_path == Path("/tmp/session.img")
        assert config.kernel_path == test_settings.kernel_path
        assert config.shared_folder.host_path == test_settings.drop_folder
        assert config.shared_folder.tag == test_settings.drop_mount_tag
        assert config.shared_folder.vm_mount_point == test_settings.drop_mount_point
        assert config.relay_host_port == test_settings.relay_host_port
        assert config.guest_env.credential.get_secret_value() == "test-key"

    def test_memory_lower_bound(self, vm_config):
        with pytest.raises(ValidationError):
            VmConfig(**{**vm_config.model_dump(), "memory_mb": 16})
