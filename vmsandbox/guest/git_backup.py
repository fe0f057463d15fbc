"""Git backup daemon, run inside the guest.

Periodically snapshots the working tree onto a dedicated backup branch and
pushes that branch, so the assistant's work survives the VM being thrown
away.

Snapshots are built with plumbing commands against a private index file:
the user's index, HEAD and the work branch are never touched. A snapshot
whose tree matches the current backup tip is skipped, so the backup branch
never receives empty commits. Pushes never use ``--force``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from vmsandbox.exceptions import ConfigurationError, GitCommandError
from vmsandbox.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GitBranchPair:
    """The branch the assistant works on and the branch backups go to."""

    work_branch: str
    backup_branch: str

    def __post_init__(self) -> None:
        if not self.work_branch or not self.backup_branch:
            raise ConfigurationError("work and backup branch names must be non-empty")
        if self.work_branch == self.backup_branch:
            raise ConfigurationError(
                f"backup branch must differ from work branch ({self.work_branch!r})"
            )

    @property
    def backup_ref(self) -> str:
        return f"refs/heads/{self.backup_branch}"


class BackupState(StrEnum):
    IDLE = "idle"
    STAGING = "staging"
    COMMITTING = "committing"


class GitRunner:
    """Runs git commands in one repository."""

    def __init__(
        self,
        repo_path: Path,
        git_path: str = "git",
        timeout_seconds: float = 120.0,
    ) -> None:
        self.repo_path = repo_path
        self.git_path = git_path
        self.timeout_seconds = timeout_seconds

    async def execute(self, *args: str, env: dict[str, str] | None = None) -> tuple[int, str, str]:
        """Run ``git <args>`` and return ``(exit_code, stdout, stderr)``.

        Raises:
            GitCommandError: If git cannot be spawned or times out
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_path,
                *args,
                cwd=self.repo_path,
                env={**os.environ, **(env or {})},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitCommandError(f"failed to spawn {self.git_path}: {e!s}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise GitCommandError(f"git {args[0]} timed out after {self.timeout_seconds}s") from e

        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def run(self, *args: str, env: dict[str, str] | None = None) -> str:
        """Run ``git <args>`` and return stdout.

        Raises:
            GitCommandError: On a non-zero exit
        """
        exit_code, stdout, stderr = await self.execute(*args, env=env)
        if exit_code != 0:
            raise GitCommandError(
                f"git {args[0]} exited {exit_code}: {stderr}",
                exit_code=exit_code,
                stderr=stderr,
            )
        return stdout

    async def resolve(self, ref: str) -> str | None:
        """Object id ``ref`` points to, or None if it does not exist."""
        exit_code, stdout, _ = await self.execute("rev-parse", "--verify", "--quiet", ref)
        return stdout if exit_code == 0 and stdout else None


class GitBackupDaemon:
    """Commits working-tree snapshots to the backup branch on an interval.

    Usage:
        daemon = GitBackupDaemon(Path("/workspace"), GitBranchPair("main", "vmsandbox/backup"))
        daemon.start()
        ...
        await daemon.stop()   # final snapshot and push
    """

    INDEX_FILENAME = "vmsandbox-backup.index"

    def __init__(
        self,
        repo_path: Path,
        branches: GitBranchPair,
        *,
        interval_seconds: float = 30.0,
        push_interval_seconds: float = 300.0,
        remote: str | None = "origin",
        git: GitRunner | None = None,
        author: tuple[str, str] | None = None,
    ) -> None:
        self.repo_path = repo_path
        self.branches = branches
        self.interval_seconds = interval_seconds
        self.push_interval_seconds = push_interval_seconds
        self.remote = remote
        self.git = git or GitRunner(repo_path)
        self.author = author
        self.state = BackupState.IDLE
        self.commits_made = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._git_dir: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings, repo_path: Path) -> GitBackupDaemon:
        return cls(
            repo_path,
            GitBranchPair(settings.work_branch, settings.backup_branch),
            interval_seconds=settings.git_backup_interval_seconds,
            push_interval_seconds=settings.git_push_interval_seconds,
            remote=settings.git_remote or None,
        )

    async def ensure_branches(self) -> None:
        """Create the backup branch from HEAD if it does not exist yet.

        In a repository with no commits the branch is created by the first
        snapshot instead.
        """
        current, head = await asyncio.gather(
            self.git.execute("symbolic-ref", "--short", "HEAD"),
            self.git.resolve("HEAD"),
        )
        exit_code, branch, _ = current
        if exit_code == 0 and branch == self.branches.backup_branch:
            raise ConfigurationError(
                f"HEAD is on the backup branch {branch!r}; check out the work branch first"
            )
        if exit_code == 0 and branch != self.branches.work_branch:
            logger.warning("HEAD is on %r, expected work branch %r", branch, self.branches.work_branch)

        if await self.git.resolve(self.branches.backup_ref) is None and head is not None:
            await self.git.run("update-ref", self.branches.backup_ref, head, "")
            logger.info("Created backup branch %s at %s", self.branches.backup_branch, head[:12])

    async def _index_env(self) -> dict[str, str]:
        if self._git_dir is None:
            self._git_dir = Path(await self.git.run("rev-parse", "--absolute-git-dir"))
        return {"GIT_INDEX_FILE": str(self._git_dir / self.INDEX_FILENAME)}

    async def tick(self) -> str | None:
        """Snapshot the working tree onto the backup branch.

        Returns:
            The new commit id, or None when nothing changed

        Raises:
            GitCommandError: If any git step fails
        """
        try:
            self.state = BackupState.STAGING
            env = await self._index_env()
            tip = await self.git.resolve(self.branches.backup_ref)
            if tip is not None:
                await self.git.run("read-tree", tip, env=env)
            else:
                await self.git.run("read-tree", "--empty", env=env)
            await self.git.run("add", "-A", env=env)
            tree = await self.git.run("write-tree", env=env)

            self.state = BackupState.COMMITTING
            if tip is not None and tree == await self.git.run("rev-parse", f"{tip}^{{tree}}"):
                logger.debug("No changes since backup %s", tip[:12])
                return None
            if tip is None and not await self.git.run("ls-files", env=env):
                logger.debug("Working tree is empty; no first backup yet")
                return None

            message = f"backup: {datetime.now(UTC).isoformat(timespec='seconds')}"
            args = ["commit-tree", tree, "-m", message]
            if tip is not None:
                args += ["-p", tip]
            commit = await self.git.run(*args, env=self._author_env())
            await self.git.run("update-ref", self.branches.backup_ref, commit, tip or "")
        finally:
            self.state = BackupState.IDLE

        self.commits_made += 1
        logger.info("Backup commit %s on %s", commit[:12], self.branches.backup_branch)
        return commit

    def _author_env(self) -> dict[str, str]:
        if self.author is None:
            return {}
        name, email = self.author
        return {
            "GIT_AUTHOR_NAME": name,
            "GIT_AUTHOR_EMAIL": email,
            "GIT_COMMITTER_NAME": name,
            "GIT_COMMITTER_EMAIL": email,
        }

    async def push(self) -> bool:
        """Push the backup branch to the remote without forcing.

        Returns:
            True if the push succeeded
        """
        if self.remote is None:
            return False
        if await self.git.resolve(self.branches.backup_ref) is None:
            logger.debug("Nothing to push: %s does not exist", self.branches.backup_branch)
            return False
        refspec = f"{self.branches.backup_ref}:{self.branches.backup_ref}"
        exit_code, _, stderr = await self.git.execute("push", self.remote, refspec)
        if exit_code != 0:
            logger.warning("Push of %s to %s failed: %s", self.branches.backup_branch, self.remote, stderr)
            return False
        logger.info("Pushed %s to %s", self.branches.backup_branch, self.remote)
        return True

    async def _tick_logged(self) -> None:
        try:
            await self.tick()
        except GitCommandError as e:
            logger.error("Backup snapshot failed (correlation_id=%s): %s", e.correlation_id, e)

    async def run(self) -> None:
        """Snapshot every ``interval_seconds`` and push every ``push_interval_seconds``.

        Returns after ``stop()`` once a final snapshot and push are done.
        """
        await self.ensure_branches()
        loop = asyncio.get_running_loop()
        last_push = loop.time()
        logger.info(
            "Backup daemon running in %s (every %ss, push every %ss)",
            self.repo_path,
            self.interval_seconds,
            self.push_interval_seconds,
        )

        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
            if self._stop.is_set():
                break
            await self._tick_logged()
            if loop.time() - last_push >= self.push_interval_seconds:
                await self.push()
                last_push = loop.time()

        await self._tick_logged()
        await self.push()
        logger.info("Backup daemon stopped after %d commit(s)", self.commits_made)

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    def request_stop(self) -> None:
        """Signal the loop to finish; safe to call from a signal handler."""
        self._stop.set()

    async def stop(self) -> None:
        """Signal the loop to finish and wait for the final snapshot and push."""
        self.request_stop()
        if self._task is not None:
            await self._task
