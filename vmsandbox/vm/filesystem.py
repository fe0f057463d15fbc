"""Host-side filesystem plumbing for VM sessions.

Shared-folder device arguments, input path validation and the per-session
writable disk copy.
"""

import logging
import os
import shutil
from pathlib import Path

from vmsandbox.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def build_device_args(host_dir: Path | str, tag: str) -> list[str]:
    """Hypervisor arguments exposing ``host_dir`` to the guest under ``tag``.

    Args:
        host_dir: Host directory to share
        tag: virtio-fs mount tag the guest mounts by

    Returns:
        ``["--device", "virtio-fs,sharedDir=<host_dir>,mountTag=<tag>"]``
    """
    return ["--device", f"virtio-fs,sharedDir={host_dir},mountTag={tag}"]


def validate_input_file(path: Path, label: str) -> None:
    """Require ``path`` to be an existing, readable regular file.

    Raises:
        ConfigurationError: Naming ``label`` and the offending path
    """
    if not path.exists():
        raise ConfigurationError(f"{label} does not exist: {path}")
    if not path.is_file():
        raise ConfigurationError(f"{label} is not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise ConfigurationError(f"{label} is not readable: {path}")


def ensure_drop_folder(path: Path) -> Path:
    """Create the host drop folder if needed.

    Raises:
        ConfigurationError: If ``path`` exists but is not a directory
    """
    if path.exists() and not path.is_dir():
        raise ConfigurationError(f"shared folder is not a directory: {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f"cannot create shared folder {path}: {e}") from e
    return path


def prepare_session_disk(master: Path, sessions_dir: Path, session_id: str) -> Path:
    """Copy the master disk image into a writable file owned by one session.

    Args:
        master: Read-only master image
        sessions_dir: Directory for per-session copies
        session_id: Session the copy belongs to

    Returns:
        Path of the new copy

    Raises:
        ConfigurationError: If the master is unusable or the copy would
            alias the master
    """
    validate_input_file(master, "master_disk_path")
    sessions_dir.mkdir(parents=True, exist_ok=True)
    copy_path = sessions_dir / f"{session_id}.img"
    if copy_path.resolve() == master.resolve():
        raise ConfigurationError(f"session disk would overwrite the master image: {master}")
    if copy_path.exists():
        raise ConfigurationError(f"session disk already exists: {copy_path}")

    logger.info("Copying disk image %s -> %s", master, copy_path)
    shutil.copyfile(master, copy_path)
    return copy_path


def remove_session_disk(path: Path) -> None:
    """Delete a per-session disk copy; missing files are ignored."""
    path.unlink(missing_ok=True)


def reject_master_disk(disk: Path, master: Path | None) -> None:
    """Refuse to hand the shared master image to a session as its disk.

    Raises:
        ConfigurationError: If ``disk`` resolves to ``master``
    """
    if master is not None and disk.resolve() == master.resolve():
        raise ConfigurationError(f"disk_path is the shared master image: {master}")
