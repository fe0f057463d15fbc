"""In-memory hypervisor for tests and dry runs.

``FakeHypervisor`` satisfies the ``Hypervisor`` protocol without spawning
anything. Its behavior is fixed at construction, so lifecycle scenarios
(slow boot, boot failure, ignored stop, crash) are deterministic.
"""

from __future__ import annotations

import asyncio
import itertools

from vmsandbox.exceptions import LaunchError
from vmsandbox.vm.hypervisor import RestState

_pids = itertools.count(40000)


class FakeConsoleInput:
    """Write side of the fake console; records everything written."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.fail_writes = False
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed or self.fail_writes:
            raise BrokenPipeError("console input closed")
        self.buffer.extend(data)

    async def drain(self) -> None:
        if self._closed or self.fail_writes:
            raise ConnectionResetError("console input closed")

    def close(self) -> None:
        self._closed = True

    def is_closing(self) -> bool:
        return self._closed

    async def wait_closed(self) -> None:
        return None


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    def __init__(self, args: list[str]) -> None:
        self.args = list(args)
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stdin = FakeConsoleInput()
        self.stderr: asyncio.StreamReader | None = None
        self.killed = False
        self.state_polls = 0
        self._exited = asyncio.Event()

    def feed_output(self, data: bytes) -> None:
        """Make ``data`` appear on the guest console."""
        self.stdout.feed_data(data)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stdin.close()
        self._exited.set()

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(self.pid)
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def rest_port_from_args(args: list[str]) -> int | None:
    """Extract the control port from ``--restful-uri tcp://host:PORT``."""
    for flag, value in itertools.pairwise(args):
        if flag == "--restful-uri":
            return int(value.rsplit(":", 1)[1])
    return None


class FakeHypervisor:
    """Deterministic ``Hypervisor``.

    Args:
        boot_polls: State queries answered with STARTING before RUNNING
        boot_exit_code: If set, the process exits with this code once
            ``boot_polls`` queries have been made instead of booting
        ignore_stop: Accept stop requests but never exit
        accept_stop: Whether stop requests are accepted at all
        stop_exit_code: Exit code used when a stop request is honored
        spawn_error: Raise LaunchError from ``spawn``
    """

    def __init__(
        self,
        *,
        boot_polls: int = 1,
        boot_exit_code: int | None = None,
        ignore_stop: bool = False,
        accept_stop: bool = True,
        stop_exit_code: int = 0,
        spawn_error: bool = False,
    ) -> None:
        self.boot_polls = boot_polls
        self.boot_exit_code = boot_exit_code
        self.ignore_stop = ignore_stop
        self.accept_stop = accept_stop
        self.stop_exit_code = stop_exit_code
        self.spawn_error = spawn_error
        self.health = RestState.RUNNING
        self.processes: list[FakeProcess] = []
        self.stop_requests: list[int] = []
        self._by_port: dict[int, FakeProcess] = {}

    def process_for(self, rest_port: int) -> FakeProcess | None:
        return self._by_port.get(rest_port)

    @property
    def live_processes(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]

    async def spawn(self, args: list[str]) -> FakeProcess:
        if self.spawn_error:
            raise LaunchError("'vfkit' not found on PATH")
        process = FakeProcess(args)
        self.processes.append(process)
        port = rest_port_from_args(args)
        if port is not None:
            self._by_port[port] = process
        return process

    async def query_state(self, rest_port: int) -> RestState | None:
        process = self._by_port.get(rest_port)
        if process is None or process.returncode is not None:
            return None
        process.state_polls += 1
        if process.state_polls < self.boot_polls:
            return RestState.STARTING
        if self.boot_exit_code is not None and process.state_polls == self.boot_polls:
            process.exit(self.boot_exit_code)
            return None
        return self.health

    async def request_stop(self, rest_port: int) -> bool:
        self.stop_requests.append(rest_port)
        if not self.accept_stop:
            return False
        process = self._by_port.get(rest_port)
        if process is not None and not self.ignore_stop:
            asyncio.get_running_loop().call_soon(process.exit, self.stop_exit_code)
        return True
