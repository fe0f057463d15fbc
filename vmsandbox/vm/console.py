"""Terminal I/O bridge between the VM console and the host display.

The hypervisor exposes the guest console (``hvc0``) on its stdin/stdout.
``ConsoleBridge`` reads output on a background task into an unbounded
queue so a slow consumer never stalls the guest, and writes input
synchronously with respect to the caller. Window resizes are coalesced
and applied on their own task.

Key translation follows xterm conventions so the bridge can be fed
directly from a windowing layer's key events.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

from vmsandbox.exceptions import RelayIoError, VmSandboxError

if TYPE_CHECKING:
    from vmsandbox.vm.guest_control import SshControlChannel

logger = logging.getLogger(__name__)


# =============================================================================
# KEY TRANSLATION
# =============================================================================


class Key(StrEnum):
    ENTER = "enter"
    BACKSPACE = "backspace"
    TAB = "tab"
    ESCAPE = "escape"
    SPACE = "space"
    DELETE = "delete"
    INSERT = "insert"
    UP = "up"
    DOWN = "down"
    RIGHT = "right"
    LEFT = "left"
    HOME = "home"
    END = "end"
    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    F1 = "f1"
    F2 = "f2"
    F3 = "f3"
    F4 = "f4"
    F5 = "f5"
    F6 = "f6"
    F7 = "f7"
    F8 = "f8"
    F9 = "f9"
    F10 = "f10"
    F11 = "f11"
    F12 = "f12"


NAMED_KEY_BYTES: dict[Key, bytes] = {
    Key.ENTER: b"\r",
    Key.BACKSPACE: b"\x7f",
    Key.TAB: b"\t",
    Key.ESCAPE: b"\x1b",
    Key.SPACE: b" ",
    Key.DELETE: b"\x1b[3~",
    Key.INSERT: b"\x1b[2~",
    Key.UP: b"\x1b[A",
    Key.DOWN: b"\x1b[B",
    Key.RIGHT: b"\x1b[C",
    Key.LEFT: b"\x1b[D",
    Key.HOME: b"\x1b[H",
    Key.END: b"\x1b[F",
    Key.PAGE_UP: b"\x1b[5~",
    Key.PAGE_DOWN: b"\x1b[6~",
    Key.F1: b"\x1bOP",
    Key.F2: b"\x1bOQ",
    Key.F3: b"\x1bOR",
    Key.F4: b"\x1bOS",
    Key.F5: b"\x1b[15~",
    Key.F6: b"\x1b[17~",
    Key.F7: b"\x1b[18~",
    Key.F8: b"\x1b[19~",
    Key.F9: b"\x1b[20~",
    Key.F10: b"\x1b[21~",
    Key.F11: b"\x1b[23~",
    Key.F12: b"\x1b[24~",
}

# Ctrl + punctuation, beyond the Ctrl+A..Ctrl+Z range
_CTRL_SYMBOLS = {
    "@": 0x00,
    " ": 0x00,
    "[": 0x1B,
    "\\": 0x1C,
    "]": 0x1D,
    "^": 0x1E,
    "_": 0x1F,
}


@dataclass(frozen=True)
class KeyEvent:
    """A key press from the windowing layer.

    ``key`` is either a ``Key`` or the character produced by the key.
    """

    key: Key | str
    ctrl: bool = False
    alt: bool = False


def key_event_to_bytes(event: KeyEvent) -> bytes | None:
    """Translate a key press into the bytes a terminal would send.

    Returns None for combinations with no terminal encoding.
    """
    key = event.key
    if isinstance(key, Key):
        data = NAMED_KEY_BYTES[key]
        if event.ctrl and key is Key.SPACE:
            data = b"\x00"
    elif event.ctrl:
        if len(key) != 1:
            return None
        lowered = key.lower()
        if "a" <= lowered <= "z":
            data = bytes([ord(lowered) - ord("a") + 1])
        elif key in _CTRL_SYMBOLS:
            data = bytes([_CTRL_SYMBOLS[key]])
        else:
            return None
    elif key:
        data = key.encode("utf-8")
    else:
        return None

    if event.alt:
        return b"\x1b" + data
    return data


# =============================================================================
# RESIZE
# =============================================================================


class ConsoleResizer(Protocol):
    async def resize(self, cols: int, rows: int) -> None: ...


class RecordingResizer:
    """Keeps every applied size; used when no guest channel is available."""

    def __init__(self) -> None:
        self.sizes: list[tuple[int, int]] = []

    async def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))


class SshConsoleResizer:
    """Applies the window size to the guest console with ``stty``."""

    def __init__(self, channel: SshControlChannel, device: str = "/dev/hvc0") -> None:
        self.channel = channel
        self.device = device

    async def resize(self, cols: int, rows: int) -> None:
        await self.channel.run(f"stty -F {self.device} rows {rows} cols {cols}")


# =============================================================================
# BRIDGE
# =============================================================================


@dataclass(frozen=True)
class ConsoleOutput:
    data: bytes


@dataclass(frozen=True)
class ConsoleDisconnected:
    reason: str


ConsoleEvent = ConsoleOutput | ConsoleDisconnected


class ConsoleBridge:
    """Bidirectional byte bridge to one VM's console.

    Usage:
        bridge = ConsoleBridge(process.stdout, process.stdin)
        bridge.start()
        await bridge.write(b"ls\\r")
        async for chunk in bridge.iter_output():
            display.feed(chunk)
    """

    READ_CHUNK_BYTES = 4096

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        resizer: ConsoleResizer | None = None,
        on_disconnect: Callable[[str], None] | None = None,
        transcript_path: Path | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._resizer = resizer or RecordingResizer()
        self._on_disconnect = on_disconnect
        self._transcript_path = transcript_path
        self._transcript: IO[bytes] | None = None
        self._transcript_write: asyncio.Future[None] | None = None
        self._queue: asyncio.Queue[ConsoleEvent] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._resize_task: asyncio.Task[None] | None = None
        self._resize_wakeup = asyncio.Event()
        self._pending_size: tuple[int, int] | None = None
        self._applied_size: tuple[int, int] | None = None
        self._disconnected = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return not (self._disconnected or self._closed)

    @property
    def size(self) -> tuple[int, int] | None:
        """Most recently requested ``(cols, rows)``."""
        return self._pending_size

    def start(self) -> None:
        if self._reader_task is not None:
            return
        if self._transcript_path is not None:
            self._transcript = open(self._transcript_path, "ab")  # noqa: SIM115
        self._reader_task = asyncio.create_task(self._read_loop())
        self._resize_task = asyncio.create_task(self._resize_loop())

    async def close(self) -> None:
        """Stop the background tasks and release the console handles.

        Consumers waiting in ``read`` or ``iter_output`` receive a
        ``ConsoleDisconnected`` if none was queued yet.
        """
        if self._closed:
            return
        self._closed = True
        for task in (self._reader_task, self._resize_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if not self._disconnected:
            self._disconnected = True
            self._queue.put_nowait(ConsoleDisconnected("console closed"))
        if not self._writer.is_closing():
            self._writer.close()
        if self._transcript_write is not None:
            await asyncio.gather(self._transcript_write, return_exceptions=True)
        if self._transcript is not None:
            self._transcript.close()
            self._transcript = None

    # -- output ---------------------------------------------------------------

    async def read(self, timeout: float | None = None) -> ConsoleEvent:
        """Next output chunk or disconnect notice, in arrival order."""
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> list[ConsoleEvent]:
        events: list[ConsoleEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def iter_output(self) -> AsyncIterator[bytes]:
        """Yield output chunks until the console disconnects."""
        while True:
            event = await self._queue.get()
            if isinstance(event, ConsoleDisconnected):
                return
            yield event.data

    async def _read_loop(self) -> None:
        try:
            while True:
                data = await self._reader.read(self.READ_CHUNK_BYTES)
                if not data:
                    self._signal_disconnect("console closed")
                    return
                if self._transcript is not None:
                    # Shielded so close() can wait for the write before closing the file.
                    self._transcript_write = asyncio.ensure_future(
                        asyncio.to_thread(self._append_transcript, self._transcript, data)
                    )
                    await asyncio.shield(self._transcript_write)
                self._queue.put_nowait(ConsoleOutput(data))
        except OSError as e:
            self._signal_disconnect(f"console read failed: {e!s}")

    @staticmethod
    def _append_transcript(transcript: IO[bytes], data: bytes) -> None:
        transcript.write(data)
        transcript.flush()

    def _signal_disconnect(self, reason: str) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.warning("Console disconnected: %s", reason)
        self._queue.put_nowait(ConsoleDisconnected(reason))
        if self._on_disconnect is not None:
            self._on_disconnect(reason)

    # -- input ----------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        """Write ``data`` to the console and wait until it is flushed.

        Raises:
            RelayIoError: If the console is gone or the write fails
        """
        if not self.is_connected:
            raise RelayIoError("console is not connected")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            self._signal_disconnect(f"console write failed: {e!s}")
            raise RelayIoError(f"console write failed: {e!s}") from e

    async def send_key(self, event: KeyEvent) -> None:
        data = key_event_to_bytes(event)
        if data is None:
            logger.debug("No terminal encoding for %s", event)
            return
        await self.write(data)

    # -- resize ---------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> None:
        """Request a new console size. Returns immediately.

        Bursts are coalesced; only the newest size is applied.
        """
        if cols <= 0 or rows <= 0:
            raise ValueError(f"invalid console size {cols}x{rows}")
        self._pending_size = (cols, rows)
        self._resize_wakeup.set()

    async def _resize_loop(self) -> None:
        while True:
            await self._resize_wakeup.wait()
            self._resize_wakeup.clear()
            size = self._pending_size
            if size is None or size == self._applied_size:
                continue
            try:
                await self._resizer.resize(*size)
            except VmSandboxError as e:
                logger.warning("Console resize to %dx%d failed: %s", size[0], size[1], e)
                continue
            self._applied_size = size
