"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DATA_HOME = Path.home() / ".local" / "share" / "vmsandbox"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Hypervisor
    hypervisor_path: str = Field(
        default="vfkit",
        description="Hypervisor executable name or absolute path",
        validation_alias=AliasChoices("hypervisor_path", "vfkit_path"),
    )
    kernel_path: Path = Field(
        default=_DATA_HOME / "vm" / "vmlinuz",
        description="Guest kernel image",
    )
    initrd_path: Path = Field(
        default=_DATA_HOME / "vm" / "initrd",
        description="Guest initial ramdisk",
    )
    master_disk_path: Path = Field(
        default=_DATA_HOME / "vm" / "rootfs.img",
        description="Read-only master disk image; sessions boot from a copy",
    )
    sessions_dir: Path = Field(
        default=_DATA_HOME / "sessions",
        description="Directory holding per-session writable disk copies",
    )
    serial_log_path: Path | None = Field(
        default=None,
        description="Optional file receiving a copy of the serial console",
    )
    cpu_count: int = Field(default=2, ge=1, le=64)
    memory_mb: int = Field(default=2048, ge=256)

    # Ports
    rest_port: int = Field(default=7777, ge=1, le=65535, description="Hypervisor REST control port")
    ssh_port: int = Field(default=2222, ge=1, le=65535, description="Host port forwarded to guest sshd")

    # Lifecycle timing
    boot_timeout_seconds: float = Field(default=60.0, gt=0)
    boot_poll_interval_seconds: float = Field(default=0.5, gt=0)
    stop_timeout_seconds: float = Field(default=10.0, gt=0)
    health_interval_seconds: float = Field(default=5.0, gt=0)

    # Drop folder
    drop_folder: Path = Field(
        default=_DATA_HOME / "drop",
        description="Host directory shared read-only with the guest",
    )
    drop_mount_tag: str = Field(default="vmsandbox-drop", min_length=1, max_length=36)
    drop_mount_point: str = Field(default="/mnt/vmsandbox-drop")
    drop_http_port: int = Field(default=7788, ge=1, le=65535)

    # Remote relay
    relay_allowlist: str = Field(
        default="",
        description="Comma-separated destinations the guest may reach through the relay",
    )
    relay_guest_port: int = Field(default=9100, ge=1, le=65535)
    relay_host_port: int = Field(default=9100, ge=1, le=65535)
    relay_max_frame_bytes: int = Field(default=1024 * 1024, ge=1024)
    relay_forward_timeout_seconds: float = Field(default=10.0, gt=0)
    relay_audit_log_size: int = Field(default=1000, ge=1)

    # Guest environment
    repo_url: str = Field(default="", description="Repository cloned inside the guest")
    work_branch: str = Field(default="main")
    backup_branch: str = Field(default="vmsandbox/backup")
    assistant_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Credential exported to the assistant process only",
        validation_alias=AliasChoices("assistant_api_key", "anthropic_api_key"),
    )

    # Git backup daemon (guest side)
    git_backup_interval_seconds: float = Field(default=30.0, gt=0)
    git_push_interval_seconds: float = Field(default=300.0, gt=0)
    git_remote: str = Field(default="origin")

    @model_validator(mode="after")
    def _branches_differ(self) -> "Settings":
        if self.work_branch == self.backup_branch:
            raise ValueError("backup_branch must differ from work_branch")
        return self

    @property
    def relay_allowlist_entries(self) -> list[str]:
        """Allowlist entries with surrounding whitespace and blanks removed."""
        return [entry.strip() for entry in self.relay_allowlist.split(",") if entry.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
