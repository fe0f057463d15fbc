"""Drop-folder transfer from host to guest.

Files placed in the host drop folder become visible to the guest through
the virtio-fs share; nothing is copied into the guest. The watcher turns
each arrival into a ``DropEvent`` and records it in a ``.pending``
notification file the guest polls.

Partial writes (``*.tmp``) and dotfiles are ignored, so writers should
create ``name.tmp`` and rename it into place once complete.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from vmsandbox.exceptions import SerializationError
from vmsandbox.vm.filesystem import ensure_drop_folder

logger = logging.getLogger(__name__)

PENDING_FILENAME = ".pending"
PARTIAL_SUFFIX = ".tmp"


def is_ignored(filename: str) -> bool:
    """Dotfiles (including ``.pending``) and partial uploads are not drops."""
    return filename.startswith(".") or filename.endswith(PARTIAL_SUFFIX)


class DropEvent(BaseModel):
    """One file that arrived in the drop folder."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    filename: str = Field(..., min_length=1, description="Name as it appeared on the host")
    destination_path: str = Field(..., description="Where the guest sees the file")
    size_bytes: int = Field(..., ge=0)
    timestamp: AwareDatetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_file(cls, filename: str, size_bytes: int, guest_mount_point: str) -> DropEvent:
        return cls(
            filename=filename,
            destination_path=str(PurePosixPath(guest_mount_point) / filename),
            size_bytes=size_bytes,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> DropEvent:
        """Decode one event.

        Raises:
            SerializationError: On malformed JSON or invalid fields
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise SerializationError(f"invalid DropEvent: {e.error_count()} error(s)") from e


class PendingDrop(BaseModel):
    """Entry in the ``.pending`` notification file."""

    filename: str
    size_bytes: int = Field(..., ge=0)
    arrived_at: AwareDatetime


def read_pending(folder: Path) -> list[PendingDrop]:
    """Read the notification file; a missing file means nothing is pending.

    Raises:
        SerializationError: If the file exists but is not a valid list
    """
    path = folder / PENDING_FILENAME
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    try:
        entries = json.loads(raw)
        return [PendingDrop.model_validate(entry) for entry in entries]
    except (ValueError, TypeError, ValidationError) as e:
        raise SerializationError(f"invalid {path}: {e!s}") from e


def clear_pending(folder: Path) -> None:
    (folder / PENDING_FILENAME).unlink(missing_ok=True)


class _DropHandler(FileSystemEventHandler):
    def __init__(self, watcher: DropFolderWatcher) -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_path(Path(os.fsdecode(event.src_path)))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_path(Path(os.fsdecode(event.dest_path)))


class DropFolderWatcher:
    """Watches the host drop folder and queues a ``DropEvent`` per arrival.

    The watchdog observer runs on its own thread; events are handed to the
    event loop in detection order.

    Usage:
        watcher = DropFolderWatcher(Path("~/drop").expanduser(), "/mnt/vmsandbox-drop")
        await watcher.start()
        event = await watcher.next_event()
        await watcher.stop()
        leftovers = watcher.drain()
    """

    def __init__(
        self,
        host_dir: Path,
        guest_mount_point: str,
        *,
        write_pending: bool = True,
    ) -> None:
        self.host_dir = host_dir
        self.guest_mount_point = guest_mount_point
        self.write_pending = write_pending
        self._queue: asyncio.Queue[DropEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._pending_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def events(self) -> asyncio.Queue[DropEvent]:
        return self._queue

    async def start(self) -> None:
        if self._observer is not None:
            return
        ensure_drop_folder(self.host_dir)
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(_DropHandler(self), str(self.host_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching drop folder %s -> %s", self.host_dir, self.guest_mount_point)

    async def stop(self) -> None:
        """Stop watching. Events already queued stay available via ``drain()``."""
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)
        logger.info("Stopped watching drop folder %s", self.host_dir)

    async def next_event(self, timeout: float | None = None) -> DropEvent:
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> list[DropEvent]:
        """Remove and return every queued event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def handle_path(self, path: Path) -> DropEvent | None:
        """Build, record and queue the event for one arrived file.

        Called from the observer thread. Returns None for ignored or
        vanished files.
        """
        if is_ignored(path.name) or path.parent.resolve() != self.host_dir.resolve():
            return None
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            logger.debug("Drop %s vanished before it could be measured", path.name)
            return None

        event = DropEvent.for_file(path.name, size, self.guest_mount_point)
        logger.info("Drop %s (%d bytes) -> %s", event.filename, event.size_bytes, event.destination_path)
        if self.write_pending:
            self._append_pending(event)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        return event

    def _append_pending(self, event: DropEvent) -> None:
        path = self.host_dir / PENDING_FILENAME
        with self._pending_lock:
            try:
                entries = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                entries = []
            except ValueError:
                logger.warning("Replacing unreadable %s", path)
                entries = []
            entries.append(
                {
                    "filename": event.filename,
                    "size_bytes": event.size_bytes,
                    "arrived_at": event.timestamp.isoformat(),
                }
            )
            tmp = path.with_name(PENDING_FILENAME + PARTIAL_SUFFIX)
            tmp.write_text(json.dumps(entries, indent=2), encoding="utf-8")
            os.replace(tmp, path)
