"""VM lifecycle management.

Creates, boots, supervises and tears down one VM per session.

State machine:

    starting -> running -> stopping -> stopped
        |          |          |
        +----------+----------+-----> failed

``stopped`` and ``failed`` are terminal. Every transition happens here and
is logged. A session owns at most one hypervisor process; discarding a
session handle without stopping it still kills the process (see
``weakref.finalize`` in ``start``). The manager and the background tasks
only hold weak references to a session, so dropping the caller's handle
is enough to trigger that.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
import weakref
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

from vmsandbox.exceptions import ConfigurationError, LaunchError, ShutdownTimeout, VmSandboxError
from vmsandbox.settings import Settings
from vmsandbox.vm.console import ConsoleBridge, ConsoleResizer
from vmsandbox.vm.drop_folder import DropFolderWatcher
from vmsandbox.vm.filesystem import (
    build_device_args,
    ensure_drop_folder,
    reject_master_disk,
    validate_input_file,
)
from vmsandbox.vm.hypervisor import Hypervisor, HypervisorProcess, RestState, VfkitHypervisor
from vmsandbox.vm.models import VmConfig, VmState
from vmsandbox.vm.remote_channel import RemoteRelay

logger = logging.getLogger(__name__)

KERNEL_CMDLINE = "console=hvc0 root=/dev/vda rw"

_TRANSITIONS: dict[VmState, frozenset[VmState]] = {
    VmState.STARTING: frozenset({VmState.RUNNING, VmState.STOPPING, VmState.FAILED}),
    VmState.RUNNING: frozenset({VmState.STOPPING, VmState.STOPPED, VmState.FAILED}),
    VmState.STOPPING: frozenset({VmState.STOPPED, VmState.FAILED}),
    VmState.STOPPED: frozenset(),
    VmState.FAILED: frozenset(),
}


def _kill_orphan(process: HypervisorProcess) -> None:
    # Runs from weakref.finalize, possibly after the event loop has closed.
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError, RuntimeError):
            process.kill()


class VmSession:
    """One VM and everything attached to it."""

    def __init__(self, config: VmConfig, session_id: str | None = None) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.config = config
        self.state = VmState.STARTING
        self.created_at = datetime.now(UTC)
        self.process: HypervisorProcess | None = None
        self.exit_code: int | None = None
        self.failure_reason: str | None = None
        self.console: ConsoleBridge | None = None
        self.drop_watcher: DropFolderWatcher | None = None
        self.relay: RemoteRelay | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._finalizer: weakref.finalize | None = None

    @property
    def is_running(self) -> bool:
        return self.state is VmState.RUNNING

    def __repr__(self) -> str:
        pid = self.process.pid if self.process is not None else None
        return f"VmSession(id={self.id!r}, state={self.state.value!r}, pid={pid})"


class VmLifecycleManager:
    """Creates and supervises VM sessions.

    Usage:
        manager = VmLifecycleManager.from_settings(get_settings())
        async with manager.session(config) as session:
            await session.console.write(b"uname -a\\r")

        # Or explicitly
        session = manager.create(config)
        await manager.start(session)
        await manager.attach(session)
        ...
        await manager.stop(session)
    """

    # Grace period for the process to exit after its console closes
    CONSOLE_EXIT_GRACE_SECONDS = 1.0

    def __init__(
        self,
        hypervisor: Hypervisor | None = None,
        *,
        boot_timeout_seconds: float = 60.0,
        boot_poll_interval_seconds: float = 0.5,
        stop_timeout_seconds: float = 10.0,
        health_interval_seconds: float = 5.0,
        master_disk_path: Path | None = None,
    ) -> None:
        self.hypervisor = hypervisor or VfkitHypervisor()
        self.boot_timeout_seconds = boot_timeout_seconds
        self.boot_poll_interval_seconds = boot_poll_interval_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.health_interval_seconds = health_interval_seconds
        self.master_disk_path = master_disk_path
        self._sessions: weakref.WeakValueDictionary[str, VmSession] = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        hypervisor: Hypervisor | None = None,
    ) -> VmLifecycleManager:
        return cls(
            hypervisor or VfkitHypervisor(settings.hypervisor_path),
            boot_timeout_seconds=settings.boot_timeout_seconds,
            boot_poll_interval_seconds=settings.boot_poll_interval_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
            health_interval_seconds=settings.health_interval_seconds,
            master_disk_path=settings.master_disk_path,
        )

    @property
    def sessions(self) -> dict[str, VmSession]:
        """Sessions that have not reached a terminal state and are still referenced."""
        return dict(self._sessions.items())

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(self, config: VmConfig) -> VmSession:
        """Validate ``config`` and register a new session in ``starting``.

        Nothing is spawned.

        Raises:
            ConfigurationError: If an input path is missing or unreadable, or
                the disk is the master image or belongs to a live session
        """
        validate_input_file(config.kernel_path, "kernel_path")
        validate_input_file(config.initrd_path, "initrd_path")
        validate_input_file(config.disk_path, "disk_path")
        reject_master_disk(config.disk_path, self.master_disk_path)
        disk = config.disk_path.resolve()
        for other in self._sessions.values():
            if other.config.disk_path.resolve() == disk:
                raise ConfigurationError(
                    f"disk_path {config.disk_path} is already in use by session {other.id}"
                )
        ensure_drop_folder(config.shared_folder.host_path)

        session = VmSession(config)
        self._sessions[session.id] = session
        logger.info("VM session %s created (disk=%s)", session.id, config.disk_path)
        return session

    def build_command(self, config: VmConfig) -> list[str]:
        """Hypervisor arguments for ``config``."""
        cmdline = f"{KERNEL_CMDLINE} {config.guest_env.to_kernel_cmdline()}".strip()
        args = [
            "--bootloader",
            f"linux,kernel={config.kernel_path},initrd={config.initrd_path},cmdline={cmdline}",
            "--cpus",
            str(config.cpu_count),
            "--memory",
            str(config.memory_mb),
            "--device",
            f"virtio-blk,path={config.disk_path}",
            "--device",
            "virtio-serial,stdio",
            "--device",
            "virtio-rng",
        ]

        forwards = [f"22:{config.ssh_port}"]
        if config.relay_guest_port is not None and config.relay_host_port is not None:
            forwards.append(f"{config.relay_guest_port}:{config.relay_host_port}")
        args += ["--device", f"virtio-net,nat,portForwards={','.join(forwards)}"]

        args += build_device_args(config.shared_folder.host_path, config.shared_folder.tag)
        args += ["--restful-uri", f"tcp://localhost:{config.rest_port}"]
        return args

    # =========================================================================
    # START
    # =========================================================================

    async def start(self, session: VmSession) -> None:
        """Spawn the hypervisor and wait for boot confirmation.

        Raises:
            LaunchError: On spawn failure, early exit or boot timeout. The
                session is ``failed`` and fully released by then.
        """
        async with session._lock:
            if session.state is not VmState.STARTING or session.process is not None:
                raise LaunchError(f"session {session.id} already started ({session.state})")

            args = self.build_command(session.config)
            try:
                process = await self.hypervisor.spawn(args)
            except LaunchError as e:
                self._fail(session, str(e))
                self._release(session)
                raise

            session.process = process
            session._finalizer = weakref.finalize(session, _kill_orphan, process)
            logger.info("VM session %s spawned (pid=%d)", session.id, process.pid)
            if process.stderr is not None:
                self._spawn_task(session, self._log_stderr(session.id, process.stderr))

            try:
                await asyncio.wait_for(
                    self._wait_for_boot(session, process),
                    timeout=self.boot_timeout_seconds,
                )
            except TimeoutError:
                error = LaunchError(
                    f"VM did not confirm boot within {self.boot_timeout_seconds}s"
                )
                await self._abort_launch(session, process, str(error))
                raise error from None
            except LaunchError as e:
                await self._abort_launch(session, process, str(e))
                raise

            self._transition(session, VmState.RUNNING)
            self._spawn_task(session, self._supervise(weakref.ref(session), process))

    async def _wait_for_boot(self, session: VmSession, process: HypervisorProcess) -> None:
        port = session.config.rest_port
        while True:
            if process.returncode is not None:
                raise LaunchError(
                    f"hypervisor exited during boot with code {process.returncode}",
                    exit_code=process.returncode,
                )
            state = await self.hypervisor.query_state(port)
            if state is RestState.RUNNING:
                return
            if state is RestState.ERROR:
                raise LaunchError("hypervisor reported an error state during boot")
            await asyncio.sleep(self.boot_poll_interval_seconds)

    async def _abort_launch(
        self,
        session: VmSession,
        process: HypervisorProcess,
        reason: str,
    ) -> None:
        await self._kill(process)
        session.exit_code = process.returncode
        self._fail(session, reason)
        await self._detach(session)
        self._release(session)

    # =========================================================================
    # ATTACH
    # =========================================================================

    async def attach(
        self,
        session: VmSession,
        *,
        console: bool = True,
        resizer: ConsoleResizer | None = None,
        watch_drops: bool = True,
        relay: RemoteRelay | None = None,
    ) -> None:
        """Wire the console bridge, drop watcher and relay to a running session.

        Raises:
            LaunchError: If the session is not running
        """
        if session.state is not VmState.RUNNING or session.process is None:
            raise LaunchError(f"cannot attach to session {session.id} in state {session.state}")
        process = session.process

        if console and session.console is None and process.stdout is not None and process.stdin is not None:
            session_ref = weakref.ref(session)
            bridge = ConsoleBridge(
                process.stdout,
                process.stdin,
                resizer=resizer,
                on_disconnect=lambda reason: self._on_console_disconnect(session_ref, reason),
                transcript_path=session.config.serial_log_path,
            )
            bridge.start()
            session.console = bridge

        if watch_drops and session.drop_watcher is None:
            shared = session.config.shared_folder
            watcher = DropFolderWatcher(shared.host_path, shared.vm_mount_point)
            await watcher.start()
            session.drop_watcher = watcher

        if relay is not None and session.relay is None:
            await relay.start()
            session.relay = relay

        logger.info(
            "VM session %s attached (console=%s, drops=%s, relay=%s)",
            session.id,
            session.console is not None,
            session.drop_watcher is not None,
            session.relay is not None,
        )

    def _on_console_disconnect(self, session_ref: weakref.ref[VmSession], reason: str) -> None:
        session = session_ref()
        if session is None or session.process is None:
            return
        self._spawn_task(session, self._handle_console_loss(session_ref, session.process, reason))

    async def _handle_console_loss(
        self,
        session_ref: weakref.ref[VmSession],
        process: HypervisorProcess,
        reason: str,
    ) -> None:
        if process.returncode is None:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=self.CONSOLE_EXIT_GRACE_SECONDS)
        if process.returncode is not None:
            # The process exited; supervision decides stopped vs failed.
            return
        session = session_ref()
        if session is not None:
            await self.mark_failed(session, f"console disconnected: {reason}")

    # =========================================================================
    # SUPERVISION
    # =========================================================================

    async def _supervise(self, session_ref: weakref.ref[VmSession], process: HypervisorProcess) -> None:
        # Holds the session only between awaits so a dropped handle can be collected.
        session = session_ref()
        if session is None:
            return
        session_id, port = session.id, session.config.rest_port
        del session

        exit_waiter = asyncio.ensure_future(process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({exit_waiter}, timeout=self.health_interval_seconds)
                if done:
                    break
                state = await self.hypervisor.query_state(port)
                if state is RestState.ERROR:
                    session = session_ref()
                    if session is not None:
                        await self.mark_failed(session, "hypervisor reported an error state")
                    return
                if state is None:
                    logger.debug("VM session %s health check: control endpoint unreachable", session_id)
        finally:
            if not exit_waiter.done():
                exit_waiter.cancel()

        exit_code = exit_waiter.result()
        session = session_ref()
        if session is None:
            logger.info("VM session %s was discarded; hypervisor exited with code %s", session_id, exit_code)
            return
        async with session._lock:
            if session.state is not VmState.RUNNING:
                return
            session.exit_code = exit_code
            if exit_code == 0:
                self._transition(session, VmState.STOPPED, "guest shut down")
            else:
                self._fail(session, f"hypervisor exited unexpectedly with code {exit_code}")
            await self._detach(session)
            self._release(session)

    async def _log_stderr(self, session_id: str, stream: asyncio.StreamReader) -> None:
        async for line in stream:
            logger.debug("vfkit[%s]: %s", session_id, line.decode("utf-8", errors="replace").rstrip())

    async def mark_failed(self, session: VmSession, reason: str) -> None:
        """Move a live session to ``failed`` and release everything it holds.

        Ignored while the session is stopping or already terminal.
        """
        async with session._lock:
            if session.state is VmState.STOPPING or session.state.is_terminal:
                logger.debug("Ignoring failure of session %s in %s: %s", session.id, session.state, reason)
                return
            self._fail(session, reason)
            await self._detach(session)
            if session.process is not None:
                await self._kill(session.process)
                session.exit_code = session.process.returncode
            self._release(session)

    # =========================================================================
    # STOP
    # =========================================================================

    async def stop(self, session: VmSession, graceful: bool = True) -> None:
        """Stop the VM and release every per-session resource.

        Asks the guest to shut down over the REST endpoint, waits up to
        ``stop_timeout_seconds``, then kills the process. Never raises on
        timeout; the session always ends ``stopped``. Calling ``stop`` on a
        terminal session is a no-op.

        Args:
            session: Session to stop
            graceful: False skips the shutdown request and kills immediately
        """
        async with session._lock:
            if session.state.is_terminal:
                return
            self._transition(session, VmState.STOPPING)
            await self._detach(session)

            process = session.process
            if process is not None and process.returncode is None:
                exited = False
                if graceful:
                    exited = await self._request_graceful_exit(session, process)
                if not exited:
                    await self._kill(process)
            if process is not None:
                session.exit_code = process.returncode

            self._release(session)
            self._transition(session, VmState.STOPPED)

    async def _request_graceful_exit(self, session: VmSession, process: HypervisorProcess) -> bool:
        if not await self.hypervisor.request_stop(session.config.rest_port):
            logger.warning("VM session %s did not accept the stop request; killing", session.id)
            return False
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout_seconds)
        except TimeoutError:
            error = ShutdownTimeout(
                f"VM session {session.id} did not stop within {self.stop_timeout_seconds}s; killing",
                timeout_seconds=self.stop_timeout_seconds,
            )
            logger.warning("%s (correlation_id=%s)", error, error.correlation_id)
            return False
        return True

    async def shutdown_all(self, graceful: bool = True) -> None:
        """Stop every live session concurrently."""
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Stopping %d VM session(s)", len(sessions))
        await asyncio.gather(*(self.stop(s, graceful=graceful) for s in sessions))

    @contextlib.asynccontextmanager
    async def session(
        self,
        config: VmConfig,
        *,
        attach: bool = True,
        resizer: ConsoleResizer | None = None,
        relay: RemoteRelay | None = None,
    ) -> AsyncIterator[VmSession]:
        """Create, start and attach a session; stop it when the block exits."""
        session = self.create(config)
        try:
            await self.start(session)
            if attach:
                await self.attach(session, resizer=resizer, relay=relay)
            yield session
        finally:
            await self.stop(session)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _transition(self, session: VmSession, new_state: VmState, reason: str | None = None) -> None:
        old_state = session.state
        if new_state not in _TRANSITIONS[old_state]:
            raise VmSandboxError(f"invalid VM state transition {old_state} -> {new_state}")
        session.state = new_state
        if reason:
            logger.info("VM session %s: %s -> %s (%s)", session.id, old_state, new_state, reason)
        else:
            logger.info("VM session %s: %s -> %s", session.id, old_state, new_state)

    def _fail(self, session: VmSession, reason: str) -> None:
        session.failure_reason = reason
        self._transition(session, VmState.FAILED, reason)

    def _spawn_task(self, session: VmSession, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        session._tasks.add(task)
        task.add_done_callback(session._tasks.discard)

    async def _detach(self, session: VmSession) -> None:
        """Cancel background tasks and stop the attachments.

        Attachments stay referenced on the session so queued drop events
        and console output can still be drained.
        """
        current = asyncio.current_task()
        tasks = [task for task in session._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if session.console is not None:
            await session.console.close()
        if session.relay is not None:
            await session.relay.stop()
        if session.drop_watcher is not None:
            await session.drop_watcher.stop()

    async def _kill(self, process: HypervisorProcess) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await process.wait()

    def _release(self, session: VmSession) -> None:
        if session._finalizer is not None:
            session._finalizer.detach()
            session._finalizer = None
        self._sessions.pop(session.id, None)
