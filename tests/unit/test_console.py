"""Unit tests for vmsandbox.vm.console."""

import asyncio
from pathlib import Path

import pytest

from vmsandbox.exceptions import GuestCommandError, RelayIoError
from vmsandbox.vm.console import (
    ConsoleBridge,
    ConsoleDisconnected,
    ConsoleOutput,
    Key,
    KeyEvent,
    RecordingResizer,
    SshConsoleResizer,
    key_event_to_bytes,
)
from vmsandbox.vm.fake import FakeConsoleInput


class TestKeyTranslation:
    @pytest.mark.parametrize(
        ("event", "expected"),
        [
            (KeyEvent("a"), b"a"),
            (KeyEvent("é"), "é".encode()),
            (KeyEvent(Key.ENTER), b"\r"),
            (KeyEvent(Key.BACKSPACE), b"\x7f"),
            (KeyEvent(Key.UP), b"\x1b[A"),
            (KeyEvent(Key.F5), b"\x1b[15~"),
            (KeyEvent("c", ctrl=True), b"\x03"),
            (KeyEvent("C", ctrl=True), b"\x03"),
            (KeyEvent("a", ctrl=True), b"\x01"),
            (KeyEvent("z", ctrl=True), b"\x1a"),
            (KeyEvent(" ", ctrl=True), b"\x00"),
            (KeyEvent(Key.SPACE, ctrl=True), b"\x00"),
            (KeyEvent("[", ctrl=True), b"\x1b"),
            (KeyEvent("x", alt=True), b"\x1bx"),
            (KeyEvent(Key.LEFT, alt=True), b"\x1b\x1b[D"),
            (KeyEvent("c", ctrl=True, alt=True), b"\x1b\x03"),
        ],
    )
    def test_encoding(self, event, expected):
        assert key_event_to_bytes(event) == expected

    @pytest.mark.parametrize("event", [KeyEvent("1", ctrl=True), KeyEvent("ab", ctrl=True), KeyEvent("")])
    def test_no_encoding(self, event):
        assert key_event_to_bytes(event) is None


class FlakyResizer:
    def __init__(self) -> None:
        self.sizes: list[tuple[int, int]] = []
        self.calls = 0

    async def resize(self, cols: int, rows: int) -> None:
        self.calls += 1
        if self.calls == 1:
            raise GuestCommandError("stty failed", exit_code=1)
        self.sizes.append((cols, rows))


@pytest.fixture
async def reader() -> asyncio.StreamReader:
    return asyncio.StreamReader()


@pytest.fixture
def writer() -> FakeConsoleInput:
    return FakeConsoleInput()


@pytest.fixture
def resizer() -> RecordingResizer:
    return RecordingResizer()


@pytest.fixture
async def bridge(reader, writer, resizer):
    bridge = ConsoleBridge(reader, writer, resizer=resizer)
    bridge.start()
    yield bridge
    await bridge.close()


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestOutput:
    async def test_output_in_order(self, bridge: ConsoleBridge, reader):
        for chunk in (b"Linux ", b"version ", b"6.1\r\n"):
            reader.feed_data(chunk)
            await _settle()
        reader.feed_eof()

        chunks = [chunk async for chunk in bridge.iter_output()]
        assert b"".join(chunks) == b"Linux version 6.1\r\n"

    async def test_eof_signals_disconnect(self, reader, writer):
        reasons = []
        bridge = ConsoleBridge(reader, writer, on_disconnect=reasons.append)
        bridge.start()
        reader.feed_data(b"bye")
        reader.feed_eof()

        assert await bridge.read(timeout=1) == ConsoleOutput(b"bye")
        assert await bridge.read(timeout=1) == ConsoleDisconnected("console closed")
        assert reasons == ["console closed"]
        assert not bridge.is_connected
        await bridge.close()

    async def test_large_output_is_chunked(self, bridge: ConsoleBridge, reader):
        reader.feed_data(b"x" * (ConsoleBridge.READ_CHUNK_BYTES * 3))
        reader.feed_eof()
        chunks = [chunk async for chunk in bridge.iter_output()]
        assert all(len(c) <= ConsoleBridge.READ_CHUNK_BYTES for c in chunks)
        assert sum(len(c) for c in chunks) == ConsoleBridge.READ_CHUNK_BYTES * 3

    async def test_transcript(self, reader, writer, tmp_path: Path):
        transcript = tmp_path / "serial.log"
        bridge = ConsoleBridge(reader, writer, transcript_path=transcript)
        bridge.start()
        reader.feed_data(b"login: ")
        await bridge.read(timeout=1)
        await bridge.close()
        assert transcript.read_bytes() == b"login: "

    async def test_close_wakes_waiting_reader(self, reader, writer):
        bridge = ConsoleBridge(reader, writer)
        bridge.start()
        pending = asyncio.create_task(bridge.read(timeout=1))
        await _settle()

        await bridge.close()

        assert await pending == ConsoleDisconnected("console closed")

    async def test_close_ends_iter_output(self, bridge: ConsoleBridge, reader):
        reader.feed_data(b"partial")
        await _settle()
        await bridge.close()
        assert [chunk async for chunk in bridge.iter_output()] == [b"partial"]

    async def test_close_after_eof_queues_one_disconnect(self, reader, writer):
        bridge = ConsoleBridge(reader, writer)
        bridge.start()
        reader.feed_eof()
        await _settle()
        await bridge.close()
        assert bridge.drain() == [ConsoleDisconnected("console closed")]


class TestInput:
    async def test_write(self, bridge: ConsoleBridge, writer):
        await bridge.write(b"ls\r")
        await bridge.write(b"pwd\r")
        assert bytes(writer.buffer) == b"ls\rpwd\r"

    async def test_send_key(self, bridge: ConsoleBridge, writer):
        await bridge.send_key(KeyEvent("c", ctrl=True))
        await bridge.send_key(KeyEvent("1", ctrl=True))
        assert bytes(writer.buffer) == b"\x03"

    async def test_write_failure(self, reader, writer):
        reasons = []
        bridge = ConsoleBridge(reader, writer, on_disconnect=reasons.append)
        bridge.start()
        writer.fail_writes = True

        with pytest.raises(RelayIoError):
            await bridge.write(b"x")

        assert not bridge.is_connected
        assert isinstance(bridge.drain()[-1], ConsoleDisconnected)
        assert len(reasons) == 1
        with pytest.raises(RelayIoError, match="not connected"):
            await bridge.write(b"y")
        await bridge.close()

    async def test_write_after_close(self, bridge: ConsoleBridge, writer):
        await bridge.close()
        await bridge.close()
        assert writer.is_closing()
        with pytest.raises(RelayIoError):
            await bridge.write(b"x")


class TestResize:
    async def test_burst_is_coalesced(self, bridge: ConsoleBridge, resizer: RecordingResizer):
        bridge.resize(80, 24)
        bridge.resize(100, 30)
        bridge.resize(120, 40)
        await _settle()
        assert resizer.sizes == [(120, 40)]
        assert bridge.size == (120, 40)

    async def test_same_size_not_reapplied(self, bridge: ConsoleBridge, resizer: RecordingResizer):
        bridge.resize(80, 24)
        await _settle()
        bridge.resize(80, 24)
        await _settle()
        assert resizer.sizes == [(80, 24)]

    @pytest.mark.parametrize(("cols", "rows"), [(0, 24), (80, 0), (-1, -1)])
    async def test_invalid_size(self, bridge: ConsoleBridge, cols, rows):
        with pytest.raises(ValueError):
            bridge.resize(cols, rows)

    async def test_resizer_failure_is_not_fatal(self, reader, writer, caplog: pytest.LogCaptureFixture):
        resizer = FlakyResizer()
        bridge = ConsoleBridge(reader, writer, resizer=resizer)
        bridge.start()
        bridge.resize(80, 24)
        await _settle()
        bridge.resize(80, 24)
        await _settle()
        await bridge.close()

        assert resizer.sizes == [(80, 24)]
        assert "resize to 80x24 failed" in caplog.text


class RecordingChannel:
    def __init__(self) -> None:
        self.commands: list[str] = []

    async def run(self, command: str) -> str:
        self.commands.append(command)
        return ""


class TestSshConsoleResizer:
    async def test_runs_stty(self):
        channel = RecordingChannel()
        await SshConsoleResizer(channel).resize(132, 43)
        assert channel.commands == ["stty -F /dev/hvc0 rows 43 cols 132"]
