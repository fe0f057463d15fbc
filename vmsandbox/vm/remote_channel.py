"""Remote relay with allowlist enforcement.

The guest has no direct route to the internet. When it needs to talk to a
remote endpoint it sends a ``RemoteMessage`` to the host relay over a
forwarded TCP port. Every message is checked against an immutable
``Allowlist`` before anything leaves the host; rejected messages never
cause a network call.

Wire format (both directions): one JSON document per line, UTF-8,
terminated by ``\\n``.

    guest -> relay   {"source": "...", "destination": "...", "payload": {...}}
    relay -> remote  <payload>
    remote -> relay  <one response line>
    relay -> guest   <response line> | {"error": "<reason>"}
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vmsandbox.exceptions import AllowlistRejection, RelayIoError, SerializationError
from vmsandbox.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_BYTES = 1024 * 1024

ERROR_INVALID_MESSAGE = b'{"error":"invalid_message"}\n'
ERROR_NOT_ALLOWED = b'{"error":"destination_not_allowed"}\n'
ERROR_PROXY_FAILED = b'{"error":"proxy_failed"}\n'
ERROR_TOO_LARGE = b'{"error":"message_too_large"}\n'


def canonical_json(value: Any) -> str:
    """Compact JSON with sorted keys and literal non-ASCII characters."""
    return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


# =============================================================================
# MESSAGE
# =============================================================================


class RemoteMessage(BaseModel):
    """A message the guest asks the host to forward to a remote endpoint."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Originating agent or process inside the guest")
    destination: str = Field(..., description="Remote endpoint, matched exactly against the allowlist")
    payload: dict[str, Any] = Field(..., description="Arbitrary JSON object")

    def payload_size_bytes(self) -> int:
        """UTF-8 length of the canonical payload serialization.

        Recomputed on every call; ``{"hello": "world"}`` is 17 bytes.
        """
        return len(canonical_json(self.payload).encode("utf-8"))

    def to_json(self) -> str:
        return canonical_json(self.model_dump(mode="json"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> RemoteMessage:
        """Decode one message.

        Raises:
            SerializationError: On malformed JSON or missing/mistyped fields
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise SerializationError(f"invalid RemoteMessage: {e.error_count()} error(s)") from e


# =============================================================================
# ALLOWLIST
# =============================================================================


class Allowlist:
    """Immutable set of destinations the relay may forward to.

    Matching is exact and case-sensitive. An empty allowlist denies
    everything. To change the permitted set, build a new ``Allowlist`` and
    swap the reference with ``RemoteRelay.replace_allowlist``.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[str] = ()) -> None:
        object.__setattr__(self, "_entries", frozenset(entries))

    @classmethod
    def from_settings(cls, settings: Settings) -> Allowlist:
        return cls(settings.relay_allowlist_entries)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Allowlist is immutable")

    @property
    def entries(self) -> frozenset[str]:
        return self._entries

    def permits(self, destination: str) -> bool:
        return destination in self._entries

    def require(self, destination: str) -> None:
        """Raise ``AllowlistRejection`` unless ``destination`` is permitted."""
        if not self.permits(destination):
            raise AllowlistRejection(
                f"destination not in allowlist: {destination}",
                destination=destination,
            )

    def __contains__(self, destination: object) -> bool:
        return destination in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Allowlist):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"Allowlist({sorted(self._entries)!r})"


# =============================================================================
# RELAY
# =============================================================================


class RelayStatus(StrEnum):
    FORWARDED = "forwarded"
    REJECTED = "rejected"
    FAILED = "failed"
    DISCARDED = "discarded"


class RelayResult(BaseModel):
    """Auditable outcome of one relay attempt."""

    status: RelayStatus
    source: str
    destination: str
    payload_bytes: int = Field(..., ge=0)
    response: str | None = Field(default=None, description="Remote response line, if forwarded")
    reason: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Forwarder(Protocol):
    async def forward(self, message: RemoteMessage) -> str:
        """Deliver ``message`` and return the remote's response line.

        Raises:
            RelayIoError: If the remote cannot be reached or does not answer
        """
        ...


def split_destination(destination: str) -> tuple[str, int]:
    """Turn ``http://host:port/...`` into ``(host, port)`` for a TCP connect.

    Raises:
        RelayIoError: If no usable port is present
    """
    address = destination.removeprefix("http://").removeprefix("https://")
    address = address.split("/", 1)[0]
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise RelayIoError(f"destination has no host:port: {destination}")
    return host.strip("[]"), int(port)


class TcpLineForwarder:
    """Forwards the canonical payload as one line over TCP and reads one line back."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_line_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_line_bytes = max_line_bytes

    async def forward(self, message: RemoteMessage) -> str:
        host, port = split_destination(message.destination)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=self.max_line_bytes),
                timeout=self.timeout_seconds,
            )
        except (OSError, TimeoutError) as e:
            raise RelayIoError(f"cannot connect to {host}:{port}: {e!s}") from e

        try:
            writer.write(canonical_json(message.payload).encode("utf-8") + b"\n")
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=self.timeout_seconds)
        except (OSError, TimeoutError, ValueError) as e:
            raise RelayIoError(f"relay to {host}:{port} failed: {e!s}") from e
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        if not line:
            raise RelayIoError(f"{host}:{port} closed the connection without responding")
        return line.decode("utf-8", errors="replace").rstrip("\r\n")


async def relay(
    message: RemoteMessage,
    allowlist: Allowlist,
    forwarder: Forwarder,
) -> RelayResult:
    """Check ``message`` against ``allowlist`` and forward it if permitted.

    Rejections are returned, not raised, and never touch the network.
    Forwarding is attempted once; a failure is reported as ``failed``.

    Args:
        message: Message received from the guest
        allowlist: Allowlist snapshot to enforce
        forwarder: Transport used for permitted messages

    Returns:
        RelayResult describing what happened
    """
    payload_bytes = message.payload_size_bytes()
    common = {
        "source": message.source,
        "destination": message.destination,
        "payload_bytes": payload_bytes,
    }

    if not allowlist.permits(message.destination):
        logger.warning(
            "Relay rejected %s -> %s: destination not in allowlist",
            message.source,
            message.destination,
        )
        return RelayResult(status=RelayStatus.REJECTED, reason="destination_not_allowed", **common)

    logger.info(
        "Relay %s -> %s (%d payload bytes)",
        message.source,
        message.destination,
        payload_bytes,
    )
    try:
        response = await forwarder.forward(message)
    except RelayIoError as e:
        logger.error(
            "Relay %s -> %s failed (correlation_id=%s): %s",
            message.source,
            message.destination,
            e.correlation_id,
            e,
        )
        return RelayResult(status=RelayStatus.FAILED, reason="proxy_failed", **common)

    return RelayResult(status=RelayStatus.FORWARDED, response=response, **common)


# =============================================================================
# SERVER
# =============================================================================


class RemoteRelay:
    """TCP server the guest reaches through its forwarded relay port.

    Each connection carries any number of newline-delimited messages. A bad
    frame is answered with an error line and the connection keeps going.

    Usage:
        relay = RemoteRelay(Allowlist(["http://127.0.0.1:18080"]), port=9100)
        await relay.start()
        ...
        relay.replace_allowlist(Allowlist([...]))
        ...
        await relay.stop()
    """

    def __init__(
        self,
        allowlist: Allowlist,
        *,
        forwarder: Forwarder | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        audit_log_size: int = 1000,
    ) -> None:
        self._allowlist = allowlist
        self._forwarder = forwarder or TcpLineForwarder(max_line_bytes=max_frame_bytes)
        self.host = host
        self.port = port
        self.max_frame_bytes = max_frame_bytes
        self._audit: collections.deque[RelayResult] = collections.deque(maxlen=audit_log_size)
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> RemoteRelay:
        kwargs.setdefault(
            "forwarder",
            TcpLineForwarder(
                timeout_seconds=settings.relay_forward_timeout_seconds,
                max_line_bytes=settings.relay_max_frame_bytes,
            ),
        )
        return cls(
            Allowlist.from_settings(settings),
            port=settings.relay_host_port,
            max_frame_bytes=settings.relay_max_frame_bytes,
            audit_log_size=settings.relay_audit_log_size,
            **kwargs,
        )

    @property
    def allowlist(self) -> Allowlist:
        return self._allowlist

    def replace_allowlist(self, allowlist: Allowlist) -> None:
        """Swap in a new allowlist; messages already in flight keep the old one."""
        logger.info("Relay allowlist replaced (%d entries)", len(allowlist))
        self._allowlist = allowlist

    @property
    def audit_log(self) -> list[RelayResult]:
        return list(self._audit)

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> int:
        """Start listening and return the bound port."""
        if self._server is not None:
            return self.port
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port,
            limit=self.max_frame_bytes,
        )
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Relay listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        """Stop accepting and cancel in-flight work.

        Messages mid-forward are recorded as ``discarded`` and their
        connections closed. Calling twice is a no-op.
        """
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        connections = list(self._connections)
        for task in connections:
            task.cancel()
        await asyncio.gather(*connections, return_exceptions=True)
        await server.wait_closed()
        logger.info("Relay on %s:%d stopped", self.host, self.port)

    async def handle_message(self, message: RemoteMessage) -> RelayResult:
        allowlist = self._allowlist
        try:
            result = await relay(message, allowlist, self._forwarder)
        except asyncio.CancelledError:
            self._audit.append(
                RelayResult(
                    status=RelayStatus.DISCARDED,
                    source=message.source,
                    destination=message.destination,
                    payload_bytes=message.payload_size_bytes(),
                    reason="session_terminated",
                )
            )
            logger.warning(
                "Relay %s -> %s discarded: session terminated",
                message.source,
                message.destination,
            )
            raise
        self._audit.append(result)
        return result

    async def handle_line(self, line: bytes) -> bytes:
        """Process one frame and return the reply line for the guest."""
        try:
            message = RemoteMessage.from_json(line)
        except SerializationError as e:
            logger.warning("Invalid relay frame (correlation_id=%s): %s", e.correlation_id, e)
            return ERROR_INVALID_MESSAGE

        result = await self.handle_message(message)
        if result.status is RelayStatus.FORWARDED:
            return (result.response or "").encode("utf-8") + b"\n"
        if result.status is RelayStatus.REJECTED:
            return ERROR_NOT_ALLOWED
        return ERROR_PROXY_FAILED

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = writer.get_extra_info("peername")
        logger.debug("Relay connection from %s", peer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("Relay frame from %s exceeds %d bytes", peer, self.max_frame_bytes)
                    writer.write(ERROR_TOO_LARGE)
                    await writer.drain()
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                writer.write(await self.handle_line(line))
                await writer.drain()
        except ConnectionError as e:
            logger.debug("Relay connection from %s dropped: %s", peer, e)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
