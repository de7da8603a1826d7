"""Ordered, thread-safe, single-direction message conduit."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterator
from typing import Generic, TypeVar

from calc_rpc.rpc._common import EndOfStream, InvalidStateError, RpcError

T = TypeVar("T")


class MessageChannel(Generic[T]):
    """Ordered conduit for one message kind between a producer and a consumer.

    One thread sends, one thread receives.  ``close()`` ends the channel
    either normally (``error=None``: buffered messages stay deliverable, then
    ``receive()`` raises :class:`EndOfStream`) or abnormally with an
    :class:`RpcError` that ``receive()`` raises once the buffer is drained.
    With ``discard=True`` the buffer is dropped so nothing already queued is
    delivered after the close; this is how client-side cancellation becomes
    preemptive.  The first close wins; later closes are ignored.
    """

    __slots__ = ("_buffer", "_closed", "_cond", "_error", "_name")

    def __init__(self, name: str = "") -> None:
        """Initialize an empty, open channel."""
        self._name = name
        self._buffer: deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._error: RpcError | None = None

    @property
    def closed(self) -> bool:
        """Whether ``close()`` has been called."""
        with self._cond:
            return self._closed

    @property
    def error(self) -> RpcError | None:
        """The error the channel was closed with, if any."""
        with self._cond:
            return self._error

    def send(self, message: T) -> None:
        """Append a message.

        Raises:
            InvalidStateError: If the channel is already closed.

        """
        with self._cond:
            if self._closed:
                raise InvalidStateError(f"send on closed channel {self._name}".rstrip())
            self._buffer.append(message)
            self._cond.notify()

    def receive(self, timeout: float | None = None) -> T:
        """Return the next message, blocking until one arrives or the channel ends.

        Raises:
            EndOfStream: The channel was closed normally and is drained.
            RpcError: The channel was closed with an error and is drained.
            TimeoutError: *timeout* seconds elapsed with nothing to return.

        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._buffer and not self._closed:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError(f"no message within {timeout}s")
                self._cond.wait(remaining)
            if self._buffer:
                return self._buffer.popleft()
            if self._error is not None:
                raise self._error
            raise EndOfStream

    def close(self, error: RpcError | None = None, *, discard: bool = False) -> bool:
        """End the channel; returns ``False`` if it was already closed."""
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._error = error
            if discard:
                self._buffer.clear()
            self._cond.notify_all()
            return True

    def __iter__(self) -> Iterator[T]:
        """Yield messages until the channel ends; re-raise a close error."""
        while True:
            try:
                yield self.receive()
            except EndOfStream:
                return

    def __len__(self) -> int:
        """Number of buffered, undelivered messages."""
        with self._cond:
            return len(self._buffer)
