"""Guest control channel over SSH.

The guest's sshd is reachable only through the hypervisor's port forward
on the host loopback. Commands are run one connection at a time; no SSH
session is held open between calls.

Also hosts the assistant launchers (one-shot and tmux-backed sessions) and
the isolation self-check.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from vmsandbox.exceptions import GuestCommandError, LaunchError

logger = logging.getLogger(__name__)

SSH_OPTIONS = (
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
    "-o", "BatchMode=yes",
    "-o", "ConnectTimeout=5",
)  # fmt: skip

# ssh exits 255 when the connection itself fails
SSH_CONNECTION_FAILED = 255


def shell_escape(value: str) -> str:
    """Single-quote ``value`` for a POSIX shell."""
    return "'" + value.replace("'", "'\\''") + "'"


def build_env_exports(env: Mapping[str, str]) -> str:
    """``export K='v';`` statements in key order, ready to prefix a command.

    Returns an empty string for an empty mapping.
    """
    if not env:
        return ""
    exports = sorted(f"export {key}={shell_escape(value)};" for key, value in env.items())
    return " ".join(exports) + " "


class SshControlChannel:
    """Runs shell commands in the guest.

    Usage:
        channel = SshControlChannel(2222)
        await channel.wait_until_reachable(timeout=60)
        kernel = await channel.run("uname -r")
    """

    def __init__(
        self,
        port: int,
        *,
        host: str = "127.0.0.1",
        user: str = "root",
        ssh_path: str = "ssh",
        command_timeout_seconds: float = 120.0,
    ) -> None:
        self.port = port
        self.host = host
        self.user = user
        self.ssh_path = ssh_path
        self.command_timeout_seconds = command_timeout_seconds

    def build_args(self, command: str) -> list[str]:
        return [
            self.ssh_path,
            *SSH_OPTIONS,
            "-p",
            str(self.port),
            f"{self.user}@{self.host}",
            command,
        ]

    async def execute(self, command: str) -> tuple[int, str, str]:
        """Run ``command`` and return ``(exit_code, stdout, stderr)``.

        Raises:
            GuestCommandError: If ssh cannot be spawned or the command times out
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_args(command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GuestCommandError(f"failed to spawn {self.ssh_path}: {e!s}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.command_timeout_seconds,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise GuestCommandError(
                f"guest command timed out after {self.command_timeout_seconds}s"
            ) from e

        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def run(self, command: str) -> str:
        """Run ``command`` and return stdout.

        Raises:
            GuestCommandError: On a non-zero exit
        """
        exit_code, stdout, stderr = await self.execute(command)
        if exit_code != 0:
            raise GuestCommandError(
                f"guest command exited {exit_code}: {stderr.strip()}",
                exit_code=exit_code,
                stderr=stderr,
            )
        return stdout

    async def output(self, command: str) -> str:
        """Run ``command`` and return stdout whatever the exit code."""
        _, stdout, _ = await self.execute(command)
        return stdout

    async def wait_until_reachable(self, timeout: float = 60.0, interval: float = 0.5) -> None:
        """Poll the forwarded SSH port until it accepts TCP connections.

        Raises:
            LaunchError: If the port does not open within ``timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port),
                    timeout=interval,
                )
            except (OSError, TimeoutError):
                if loop.time() >= deadline:
                    raise LaunchError(
                        f"guest ssh on {self.host}:{self.port} not reachable after {timeout}s"
                    ) from None
                await asyncio.sleep(interval)
                continue
            writer.close()
            await writer.wait_closed()
            logger.info("Guest ssh reachable on %s:%d", self.host, self.port)
            return


# =============================================================================
# ASSISTANT
# =============================================================================


def assistant_command(
    env: Mapping[str, str],
    working_dir: str,
    prompt: str,
    log_path: str = "/var/log/vmsandbox-assistant.log",
) -> str:
    """Shell line that runs the coding assistant with permission checks disabled.

    The assistant only ever runs inside the guest.
    """
    return (
        f"{build_env_exports(env)}cd {shell_escape(working_dir)} && "
        "claude --dangerously-skip-permissions --no-update-notifier "
        f"-p {shell_escape(prompt)} 2>{shell_escape(log_path)}"
    )


async def launch_assistant(
    channel: SshControlChannel,
    env: Mapping[str, str],
    prompt: str,
    working_dir: str = "/workspace",
) -> str:
    """Run the assistant to completion in the guest and return its output.

    Raises:
        GuestCommandError: If the assistant exits non-zero
    """
    logger.info("Launching assistant in guest (prompt %d chars)", len(prompt))
    output = await channel.run(assistant_command(env, working_dir, prompt))
    logger.info("Assistant finished (%d bytes of output)", len(output))
    return output


class AssistantConfig(BaseModel):
    """How assistant sessions are launched in the guest."""

    working_dir: str = Field(default="/workspace", description="Guest directory the assistant starts in")
    env: dict[str, str] = Field(default_factory=dict, description="Exported before launch")
    allowed_mcp_servers: list[str] = Field(
        default_factory=list,
        description="MCP server names the guest's assistant config may list; recorded, not enforced",
    )


class AssistantSession(BaseModel):
    """One assistant run tracked by ``AssistantSessionManager``."""

    model_config = ConfigDict(frozen=True)

    id: str
    prompt_summary: str
    started_at: AwareDatetime


class AssistantSessionManager:
    """Runs assistant sessions in the background, one tmux window each.

    The tracked list is in-memory only: a session that finished on its own
    stays listed until ``stop_session`` is called for it.

    Usage:
        manager = AssistantSessionManager(channel, AssistantConfig(env=env))
        session = await manager.start_session("fix the failing tests")
        manager.list_sessions()
        await manager.stop_session(session.id)
    """

    TMUX_SESSION = "vmsandbox"
    PROMPT_SUMMARY_CHARS = 60

    def __init__(self, channel: SshControlChannel, config: AssistantConfig | None = None) -> None:
        self.channel = channel
        self.config = config or AssistantConfig()
        self._sessions: dict[str, AssistantSession] = {}

    @staticmethod
    def new_session_id() -> str:
        return f"assistant-{int(time.time())}-{uuid.uuid4().hex[:6]}"

    def window_target(self, session_id: str) -> str:
        return f"{self.TMUX_SESSION}:{session_id}"

    def start_script(self, session_id: str, prompt: str) -> str:
        """Shell script that opens a detached tmux window running the assistant."""
        command = assistant_command(
            self.config.env,
            self.config.working_dir,
            prompt,
            log_path=f"/var/log/vmsandbox-{session_id}.log",
        )
        tmux_session = shell_escape(self.TMUX_SESSION)
        return (
            f"tmux has-session -t {tmux_session} 2>/dev/null || tmux new-session -d -s {tmux_session}; "
            f"tmux new-window -d -t {shell_escape(self.TMUX_SESSION + ':')} -n {shell_escape(session_id)} "
            f"{shell_escape(command)}"
        )

    async def start_session(self, prompt: str) -> AssistantSession:
        """Launch the assistant in a new tmux window and start tracking it.

        Raises:
            GuestCommandError: If the window could not be created
        """
        session_id = self.new_session_id()
        await self.channel.run(self.start_script(session_id, prompt))
        session = AssistantSession(
            id=session_id,
            prompt_summary=prompt[: self.PROMPT_SUMMARY_CHARS],
            started_at=datetime.now(UTC),
        )
        self._sessions[session_id] = session
        logger.info(
            "Assistant session %s started (allowed MCP servers: %s)",
            session_id,
            ", ".join(self.config.allowed_mcp_servers) or "none",
        )
        return session

    async def stop_session(self, session_id: str) -> None:
        """Close the session's tmux window and stop tracking it.

        The window may already be gone, so SSH failures are logged and the
        session is forgotten regardless.
        """
        target = shell_escape(self.window_target(session_id))
        try:
            await self.channel.run(f"tmux kill-window -t {target} 2>/dev/null || true")
        except GuestCommandError as e:
            logger.warning("Stopping assistant session %s failed (ignored): %s", session_id, e)
        self._sessions.pop(session_id, None)
        logger.info("Assistant session %s stopped", session_id)

    def list_sessions(self) -> list[AssistantSession]:
        """Tracked sessions in start order."""
        return list(self._sessions.values())


# =============================================================================
# ISOLATION CHECKS
# =============================================================================


class IsolationCheck(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class IsolationReport(BaseModel):
    """Outcome of ``verify_isolation``."""

    checks: list[IsolationCheck] = Field(default_factory=list)

    @property
    def all_checks_passed(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)


async def _check_path_absent(channel: SshControlChannel, name: str, path: str) -> IsolationCheck:
    exit_code, _, stderr = await channel.execute(f"test -e {shell_escape(path)}")
    if exit_code == SSH_CONNECTION_FAILED:
        return IsolationCheck(name=name, passed=False, detail=f"ssh failed: {stderr.strip()}")
    if exit_code == 0:
        return IsolationCheck(name=name, passed=False, detail=f"{path} is visible in the guest")
    return IsolationCheck(name=name, passed=True, detail=f"{path} absent")


async def verify_isolation(
    channel: SshControlChannel,
    drop_mount_point: str,
    *,
    host_only_path: str = "/private/etc/passwd",
    sentinel_path: Path = Path("/tmp/.vmsandbox-host-sentinel"),  # noqa: S108
) -> IsolationReport:
    """Confirm from inside the guest that the host is out of reach.

    Checks:
    - a host-only path does not exist in the guest
    - a sentinel file written on the host is invisible to the guest
    - the guest has no direct internet route
    - the drop folder share is mounted and readable
    """
    report = IsolationReport()

    report.checks.append(
        await _check_path_absent(channel, "host-only path inaccessible", host_only_path)
    )

    sentinel_path.write_text("vmsandbox-host-only\n", encoding="utf-8")
    try:
        report.checks.append(
            await _check_path_absent(channel, "host sentinel inaccessible", str(sentinel_path))
        )
    finally:
        sentinel_path.unlink(missing_ok=True)

    exit_code, _, _ = await channel.execute("curl -sf --max-time 3 https://example.com")
    if exit_code == SSH_CONNECTION_FAILED:
        check = IsolationCheck(name="no direct internet", passed=False, detail="ssh failed")
    elif exit_code == 0:
        check = IsolationCheck(name="no direct internet", passed=False, detail="example.com reachable")
    else:
        check = IsolationCheck(name="no direct internet", passed=True, detail=f"curl exited {exit_code}")
    report.checks.append(check)

    exit_code, _, stderr = await channel.execute(f"ls {shell_escape(drop_mount_point)}")
    report.checks.append(
        IsolationCheck(
            name="drop folder readable",
            passed=exit_code == 0,
            detail=f"{drop_mount_point} listed" if exit_code == 0 else stderr.strip(),
        )
    )

    for check in report.checks:
        log = logger.info if check.passed else logger.warning
        log("Isolation check %r: %s (%s)", check.name, "pass" if check.passed else "FAIL", check.detail)
    return report
