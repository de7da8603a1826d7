"""Deadline and cancellation supervision for a single call.

A :class:`CallSupervisor` starts ``ACTIVE`` and makes exactly one transition
to ``COMPLETED``, ``EXPIRED`` or ``CANCELLED``.  Whichever of
``complete()`` / ``expire()`` / ``cancel()`` runs first wins; the others
return ``False``.  The winning transition fixes the call's terminal
:class:`Status` and runs the registered done-callbacks once.

Expiry is driven by a daemon ``threading.Timer`` and also detected lazily by
``is_active()``, so a handler polling between work units observes the
deadline even if the timer thread has not run yet.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from enum import Enum

from calc_rpc.rpc._common import Status, StatusCode, _logger

DoneCallback = Callable[[Status], None]


class CallState(Enum):
    """Lifecycle state of a supervised call."""

    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


DEADLINE_EXCEEDED_MESSAGE = "Deadline exceeded"


class CallSupervisor:
    """Attach a deadline to a call and turn expiry or cancellation into a terminal status."""

    __slots__ = ("_callbacks", "_deadline", "_done", "_lock", "_name", "_state", "_status", "_timer")

    def __init__(self, timeout: float | None = None, *, deadline: float | None = None, name: str = "") -> None:
        """Create an active supervisor.

        Args:
            timeout: Relative time budget in seconds.  Mutually exclusive
                with *deadline*.
            deadline: Absolute ``time.monotonic()`` expiry.
            name: Label used in log records (usually the method name).

        Raises:
            ValueError: If both *timeout* and *deadline* are given.

        """
        if timeout is not None and deadline is not None:
            raise ValueError("timeout and deadline are mutually exclusive")
        if timeout is not None:
            deadline = time.monotonic() + timeout
        self._deadline = deadline
        self._name = name
        self._lock = threading.Lock()
        self._state = CallState.ACTIVE
        self._status: Status | None = None
        self._callbacks: list[DoneCallback] = []
        self._done = threading.Event()
        self._timer: threading.Timer | None = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.expire()
            else:
                self._timer = threading.Timer(remaining, self.expire)
                self._timer.daemon = True
                self._timer.start()

    # --- Inspection ---

    @property
    def deadline(self) -> float | None:
        """Absolute ``time.monotonic()`` deadline, or ``None`` for no deadline."""
        return self._deadline

    @property
    def state(self) -> CallState:
        """Current lifecycle state."""
        self._check_deadline()
        with self._lock:
            return self._state

    @property
    def status(self) -> Status | None:
        """The terminal status, or ``None`` while the call is active."""
        self._check_deadline()
        with self._lock:
            return self._status

    @property
    def cancelled(self) -> bool:
        """Whether the call was cancelled."""
        return self.state == CallState.CANCELLED

    @property
    def expired(self) -> bool:
        """Whether the call's deadline passed before it finished."""
        return self.state == CallState.EXPIRED

    def is_active(self) -> bool:
        """Whether the call is still running (the cooperative polling check for handlers)."""
        return self.state == CallState.ACTIVE

    def time_remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or ``None`` without a deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_done(self) -> None:
        """Raise the terminal status as an ``RpcError`` unless the call is still active or succeeded.

        Raises:
            RpcError: If the call expired, was cancelled, or completed with an error.

        """
        status = self.status
        if status is not None and not status.ok:
            raise status.to_error()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the call reaches a terminal state; return whether it did."""
        return self._done.wait(timeout)

    # --- Transitions ---

    def complete(self, status: Status) -> bool:
        """Record the call's own outcome (any code, including errors reported by the peer)."""
        return self._resolve(CallState.COMPLETED, status)

    def expire(self) -> bool:
        """Mark the deadline as exceeded."""
        return self._resolve(CallState.EXPIRED, Status(StatusCode.DEADLINE_EXCEEDED, DEADLINE_EXCEEDED_MESSAGE))

    def cancel(self, message: str = "Call cancelled") -> bool:
        """Cancel the call."""
        return self._resolve(CallState.CANCELLED, Status(StatusCode.CANCELLED, message))

    def add_done_callback(self, fn: DoneCallback) -> None:
        """Run *fn(status)* once the call is terminal (immediately if it already is)."""
        with self._lock:
            if self._state == CallState.ACTIVE:
                self._callbacks.append(fn)
                return
            status = self._status
        assert status is not None
        self._run_callback(fn, status)

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.expire()

    def _resolve(self, state: CallState, status: Status) -> bool:
        with self._lock:
            if self._state != CallState.ACTIVE:
                return False
            self._state = state
            self._status = status
            callbacks = self._callbacks
            self._callbacks = []
        if self._timer is not None:
            self._timer.cancel()
        self._done.set()
        if state != CallState.COMPLETED:
            _logger.debug("Call %s %s: %s", self._name, state.value, status, extra={"method": self._name})
        for fn in callbacks:
            self._run_callback(fn, status)
        return True

    def _run_callback(self, fn: DoneCallback, status: Status) -> None:
        try:
            fn(status)
        except Exception:
            _logger.error("Done-callback for %s failed", self._name, exc_info=True, extra={"method": self._name})
