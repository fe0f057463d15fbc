"""vmsandbox exception hierarchy.

Base exceptions for every layer of the sandbox with correlation ID support.

Usage:
    from vmsandbox.exceptions import LaunchError, ConfigurationError

    try:
        await manager.start(session)
    except LaunchError as e:
        logger.error("VM failed to boot (correlation_id=%s)", e.correlation_id)
"""

import uuid


class VmSandboxError(Exception):
    """Base exception for all vmsandbox errors.

    Carries a correlation_id for tracing errors across the host, the
    relay and the guest.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class ConfigurationError(VmSandboxError):
    """Invalid paths, ports or branch settings, detected before any spawn."""

    pass


class LaunchError(VmSandboxError):
    """The hypervisor could not be spawned or the VM did not confirm boot."""

    def __init__(self, message: str, *, exit_code: int | None = None, **kwargs):
        self.exit_code = exit_code
        super().__init__(message, **kwargs)


class ShutdownTimeout(VmSandboxError):
    """Graceful stop did not finish within its bound.

    Logged by the lifecycle manager before it escalates to a forced kill.
    Never raised to callers of ``stop()``.
    """

    def __init__(self, message: str, *, timeout_seconds: float | None = None, **kwargs):
        self.timeout_seconds = timeout_seconds
        super().__init__(message, **kwargs)


class RelayIoError(VmSandboxError):
    """Console stream or relay forwarding I/O failed."""

    pass


class AllowlistRejection(VmSandboxError):
    """A relayed message targeted a destination outside the allowlist."""

    def __init__(self, message: str, *, destination: str | None = None, **kwargs):
        self.destination = destination
        super().__init__(message, **kwargs)


class SerializationError(VmSandboxError):
    """Malformed DropEvent or RemoteMessage JSON."""

    pass


class GuestCommandError(VmSandboxError):
    """A command run over the guest control channel exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        **kwargs,
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message, **kwargs)


class GitCommandError(VmSandboxError):
    """A git invocation made by the backup daemon failed."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        **kwargs,
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message, **kwargs)
