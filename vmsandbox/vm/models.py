"""Data models for VM sessions.

Plain configuration values used by the lifecycle manager. Live handles
(process, console bridge, watcher, relay) live on ``VmSession`` in
``vmsandbox.vm.lifecycle``.
"""

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from vmsandbox.settings import Settings


class VmState(StrEnum):
    """Lifecycle state of a VM session."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VmState.STOPPED, VmState.FAILED)


class SharedFolder(BaseModel):
    """A host directory exposed to the guest as a virtio-fs share.

    The guest mounts it by ``tag``; ``vm_mount_point`` is only where the
    guest is expected to mount it and never reaches the hypervisor.
    """

    model_config = ConfigDict(frozen=True)

    host_path: Path = Field(..., description="Host directory to share")
    vm_mount_point: str = Field(..., description="Guest path the share is mounted at")
    tag: str = Field(..., min_length=1, max_length=36, description="virtio-fs mount tag")


class GuestEnvironment(BaseModel):
    """Values handed to the guest at boot and to the assistant at launch."""

    model_config = ConfigDict(frozen=True)

    repo_url: str = ""
    work_branch: str = "main"
    backup_branch: str = "vmsandbox/backup"
    credential: SecretStr = Field(default=SecretStr(""), repr=False)

    @model_validator(mode="after")
    def _branches_differ(self) -> "GuestEnvironment":
        if self.work_branch == self.backup_branch:
            raise ValueError("backup_branch must differ from work_branch")
        return self

    def to_kernel_cmdline(self) -> str:
        """Non-secret values as kernel command line parameters.

        The credential never appears here.
        """
        params = []
        if self.repo_url:
            params.append(f"vmsandbox.repo={self.repo_url}")
        params.append(f"vmsandbox.branch={self.work_branch}")
        params.append(f"vmsandbox.backup_branch={self.backup_branch}")
        return " ".join(params)

    def to_env(self) -> dict[str, str]:
        """Environment exported to the assistant process."""
        env = {
            "VMSANDBOX_REPO_URL": self.repo_url,
            "VMSANDBOX_WORK_BRANCH": self.work_branch,
            "VMSANDBOX_BACKUP_BRANCH": self.backup_branch,
        }
        secret = self.credential.get_secret_value()
        if secret:
            env["ANTHROPIC_API_KEY"] = secret
        return env


class VmConfig(BaseModel):
    """Everything needed to boot one session's VM."""

    model_config = ConfigDict(frozen=True)

    kernel_path: Path
    initrd_path: Path
    disk_path: Path = Field(..., description="Per-session writable disk copy")
    serial_log_path: Path | None = None
    rest_port: int = Field(default=7777, ge=1, le=65535)
    cpu_count: int = Field(default=2, ge=1)
    memory_mb: int = Field(default=2048, ge=256)
    shared_folder: SharedFolder
    ssh_port: int = Field(default=2222, ge=1, le=65535)
    relay_guest_port: int | None = Field(default=None, ge=1, le=65535)
    relay_host_port: int | None = Field(default=None, ge=1, le=65535)
    guest_env: GuestEnvironment = Field(default_factory=GuestEnvironment)

    @classmethod
    def from_settings(cls, settings: Settings, disk_path: Path) -> "VmConfig":
        """Build a session config from application settings.

        Args:
            settings: Loaded settings
            disk_path: The session's writable disk copy

        Returns:
            VmConfig for one session
        """
        return cls(
            kernel_path=settings.kernel_path,
            initrd_path=settings.initrd_path,
            disk_path=disk_path,
            serial_log_path=settings.serial_log_path,
            rest_port=settings.rest_port,
            cpu_count=settings.cpu_count,
            memory_mb=settings.memory_mb,
            shared_folder=SharedFolder(
                host_path=settings.drop_folder,
                vm_mount_point=settings.drop_mount_point,
                tag=settings.drop_mount_tag,
            ),
            ssh_port=settings.ssh_port,
            relay_guest_port=settings.relay_guest_port,
            relay_host_port=settings.relay_host_port,
            guest_env=GuestEnvironment(
                repo_url=settings.repo_url,
                work_branch=settings.work_branch,
                backup_branch=settings.backup_branch,
                credential=settings.assistant_api_key,
            ),
        )
