"""Status codes, errors, loggers, and per-call bookkeeping for the RPC framework."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_logger = logging.getLogger("calc_rpc.rpc")
_access_logger = logging.getLogger("calc_rpc.access")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class StatusCode(IntEnum):
    """Terminal status codes; numbering follows gRPC so codes are recognisable on the wire."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14

    @classmethod
    def from_wire(cls, value: str | None) -> StatusCode:
        """Parse a status code from trailer metadata, mapping garbage to ``UNKNOWN``."""
        if value is None:
            return cls.UNKNOWN
        try:
            return cls(int(value))
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Status:
    """Terminal outcome of a call, delivered exactly once.

    Attributes:
        code: The status code.
        message: Human-readable detail (empty for ``OK``).

    """

    code: StatusCode
    message: str = ""

    @property
    def ok(self) -> bool:
        """Whether the call succeeded."""
        return self.code == StatusCode.OK

    def to_error(self, request_id: str = "") -> RpcError:
        """Build the ``RpcError`` raised to callers for this (non-OK) status."""
        return RpcError(self.code, self.message, request_id=request_id)

    def __str__(self) -> str:
        if self.message:
            return f"{self.code.name}: {self.message}"
        return self.code.name


OK_STATUS: Final[Status] = Status(StatusCode.OK)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """A call terminated with a non-OK status.

    Raised on the client for every failed call, and raised inside server
    handlers to end the call with a specific status (``ctx.abort()`` is a
    shorthand for doing so).
    """

    def __init__(self, code: StatusCode, message: str = "", *, request_id: str = "") -> None:
        """Initialize with the status code and detail message."""
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(f"{code.name}: {message}" if message else code.name)

    @property
    def status(self) -> Status:
        """The error as a :class:`Status`."""
        return Status(self.code, self.message)


class InvalidStateError(RuntimeError):
    """A stream operation was attempted in a state that does not allow it (e.g. send after close)."""


class EndOfStream(Exception):
    """Raised by ``MessageChannel.receive()`` when the channel ended normally."""


# ---------------------------------------------------------------------------
# MethodType enum
# ---------------------------------------------------------------------------


class MethodType(Enum):
    """Classification of RPC interaction patterns."""

    UNARY = "unary"
    SERVER_STREAM = "server_stream"
    CLIENT_STREAM = "client_stream"
    BIDI_STREAM = "bidi_stream"

    @property
    def client_streams(self) -> bool:
        """Whether the client sends a sequence of requests."""
        return self in (MethodType.CLIENT_STREAM, MethodType.BIDI_STREAM)

    @property
    def server_streams(self) -> bool:
        """Whether the server sends a sequence of responses."""
        return self in (MethodType.SERVER_STREAM, MethodType.BIDI_STREAM)


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("calc_rpc_request_id", default="")


# ---------------------------------------------------------------------------
# Per-call message statistics
# ---------------------------------------------------------------------------


@dataclass
class CallStatistics:
    """Mutable per-call message counters, surfaced through the access log.

    Attributes:
        messages_received: Request messages read by the server.
        messages_sent: Response messages written by the server.

    """

    messages_received: int = 0
    messages_sent: int = 0
