"""Shared test fixtures for vmsandbox.

Provides settings, on-disk VM inputs and a deterministic hypervisor so
lifecycle tests never boot a real VM.
"""

from pathlib import Path

import pytest
from pydantic import SecretStr

from vmsandbox.settings import Settings
from vmsandbox.vm.fake import FakeHypervisor
from vmsandbox.vm.lifecycle import VmLifecycleManager
from vmsandbox.vm.models import GuestEnvironment, SharedFolder, VmConfig


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Provide test settings with every path inside tmp_path."""
    return Settings(
        _env_file=None,
        environment="testing",
        kernel_path=tmp_path / "vm" / "vmlinuz",
        initrd_path=tmp_path / "vm" / "initrd",
        master_disk_path=tmp_path / "vm" / "rootfs.img",
        sessions_dir=tmp_path / "sessions",
        drop_folder=tmp_path / "drop",
        relay_allowlist="http://127.0.0.1:18080",
        assistant_api_key=SecretStr("test-key"),
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from vmsandbox import settings

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# VM INPUTS
# =============================================================================


@pytest.fixture
def vm_files(tmp_path: Path) -> dict[str, Path]:
    """Kernel, initrd, disk copy and drop folder on disk."""
    vm_dir = tmp_path / "vm"
    vm_dir.mkdir()
    files = {
        "kernel": vm_dir / "vmlinuz",
        "initrd": vm_dir / "initrd",
        "disk": vm_dir / "session.img",
    }
    for path in files.values():
        path.write_bytes(b"\x00" * 16)
    files["drop"] = tmp_path / "drop"
    return files


@pytest.fixture
def vm_config(vm_files: dict[str, Path]) -> VmConfig:
    return VmConfig(
        kernel_path=vm_files["kernel"],
        initrd_path=vm_files["initrd"],
        disk_path=vm_files["disk"],
        rest_port=17777,
        shared_folder=SharedFolder(
            host_path=vm_files["drop"],
            vm_mount_point="/mnt/vmsandbox-drop",
            tag="vmsandbox-drop",
        ),
        ssh_port=12222,
        relay_guest_port=9100,
        relay_host_port=19100,
        guest_env=GuestEnvironment(
            repo_url="https://example.com/repo.git",
            credential=SecretStr("sk-test"),
        ),
    )


# =============================================================================
# HYPERVISOR
# =============================================================================


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def manager(fake_hypervisor: FakeHypervisor) -> VmLifecycleManager:
    """Lifecycle manager with short timeouts over the fake hypervisor."""
    mgr = VmLifecycleManager(
        fake_hypervisor,
        boot_timeout_seconds=1.0,
        boot_poll_interval_seconds=0.01,
        stop_timeout_seconds=0.2,
        health_interval_seconds=0.05,
    )
    mgr.CONSOLE_EXIT_GRACE_SECONDS = 0.05
    return mgr
