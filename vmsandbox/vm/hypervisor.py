"""Hypervisor capability: spawn a VM process and talk to its REST control API.

``VfkitHypervisor`` drives the real ``vfkit`` binary. The lifecycle manager
only depends on the ``Hypervisor`` protocol, so tests substitute
``vmsandbox.vm.fake.FakeHypervisor``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from enum import StrEnum
from pathlib import Path
from typing import Protocol

import httpx

from vmsandbox.exceptions import LaunchError

logger = logging.getLogger(__name__)


class RestState(StrEnum):
    """VM state as reported by the hypervisor's REST endpoint, normalized."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


_VFKIT_STATES = {
    "VirtualMachineStateStarting": RestState.STARTING,
    "VirtualMachineStateResuming": RestState.STARTING,
    "VirtualMachineStateRunning": RestState.RUNNING,
    "VirtualMachineStatePausing": RestState.PAUSED,
    "VirtualMachineStatePaused": RestState.PAUSED,
    "VirtualMachineStateStopping": RestState.STOPPED,
    "VirtualMachineStateStopped": RestState.STOPPED,
    "VirtualMachineStateError": RestState.ERROR,
}


def parse_rest_state(raw: str) -> RestState:
    """Map a vfkit state string to ``RestState``; unknown values are errors."""
    return _VFKIT_STATES.get(raw, RestState.ERROR)


class HypervisorProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the manager relies on."""

    pid: int
    returncode: int | None
    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class Hypervisor(Protocol):
    async def spawn(self, args: list[str]) -> HypervisorProcess:
        """Start the hypervisor with ``args``.

        Raises:
            LaunchError: If the binary is missing or cannot be executed
        """
        ...

    async def query_state(self, rest_port: int) -> RestState | None:
        """Current VM state, or None when the control endpoint is unreachable."""
        ...

    async def request_stop(self, rest_port: int) -> bool:
        """Ask the guest to shut down; False if the request was not accepted."""
        ...


class VfkitHypervisor:
    """Runs ``vfkit`` as a child process and controls it over ``--restful-uri``.

    Usage:
        hypervisor = VfkitHypervisor()
        process = await hypervisor.spawn(args)
        state = await hypervisor.query_state(7777)
    """

    # Fallback locations searched after PATH
    SEARCH_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")

    def __init__(self, executable: str = "vfkit", rest_timeout_seconds: float = 2.0) -> None:
        self.executable = executable
        self.rest_timeout_seconds = rest_timeout_seconds

    def find_executable(self) -> str:
        """Resolve the hypervisor binary.

        Raises:
            LaunchError: If it cannot be found
        """
        if os.sep in self.executable:
            if Path(self.executable).is_file():
                return self.executable
            raise LaunchError(f"hypervisor not found at '{self.executable}'")

        found = shutil.which(self.executable)
        if found:
            return found
        for directory in self.SEARCH_DIRS:
            candidate = Path(directory) / self.executable
            if candidate.is_file():
                return str(candidate)
        raise LaunchError(
            f"'{self.executable}' not found on PATH or in {', '.join(self.SEARCH_DIRS)}. "
            "Install it with: brew install vfkit"
        )

    async def spawn(self, args: list[str]) -> HypervisorProcess:
        executable = self.find_executable()
        logger.debug("Spawning %s %s", executable, " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchError(f"failed to spawn {executable}: {e!s}") from e
        logger.info("Hypervisor started (pid=%d)", process.pid)
        return process

    async def query_state(self, rest_port: int) -> RestState | None:
        url = f"http://localhost:{rest_port}/vm/state"
        try:
            async with httpx.AsyncClient(timeout=self.rest_timeout_seconds) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("VM state endpoint unreachable on port %d: %s", rest_port, e)
            return None

        if not response.is_success:
            logger.warning("VM state endpoint returned HTTP %d", response.status_code)
            return RestState.ERROR
        try:
            data = response.json()
        except ValueError:
            logger.warning("VM state endpoint returned invalid JSON")
            return RestState.ERROR
        if not isinstance(data, dict):
            logger.warning("VM state endpoint returned %s instead of an object", type(data).__name__)
            return RestState.ERROR
        return parse_rest_state(data.get("state", ""))

    async def request_stop(self, rest_port: int) -> bool:
        url = f"http://localhost:{rest_port}/vm/state"
        try:
            async with httpx.AsyncClient(timeout=self.rest_timeout_seconds) as client:
                response = await client.put(url, json={"state": "Stop"})
        except httpx.HTTPError as e:
            logger.warning("VM stop request failed on port %d: %s", rest_port, e)
            return False
        if not response.is_success:
            logger.warning("VM stop request returned HTTP %d", response.status_code)
            return False
        return True
