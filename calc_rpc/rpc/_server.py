"""Server side: RpcServer, ServerContext, and per-call dispatch."""

from __future__ import annotations

import contextlib
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, MutableMapping
from typing import Any, Generic, Literal, NoReturn, TypeVar

from pyarrow import ipc

from calc_rpc.codec import ArrowMessage, CodecError
from calc_rpc.rpc._channel import MessageChannel
from calc_rpc.rpc._common import (
    OK_STATUS,
    CallStatistics,
    EndOfStream,
    InvalidStateError,
    RpcError,
    Status,
    StatusCode,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from calc_rpc.rpc._deadline import CallState, CallSupervisor
from calc_rpc.rpc._debug import fmt_batch, wire_stream_logger
from calc_rpc.rpc._transport import RpcTransport
from calc_rpc.rpc._types import RpcMethodInfo, _accepts_ctx, _validate_implementation, rpc_methods
from calc_rpc.rpc._wire import (
    _TRANSPORT_ERRORS,
    CallHeaders,
    _read_frame,
    _read_headers,
    _write_message,
    _write_status_stream,
    _write_trailers,
)

T = TypeVar("T")

_PUMP_JOIN_TIMEOUT = 5.0
"""Seconds the call thread waits for the client to hang up after the trailers."""


# ---------------------------------------------------------------------------
# ServerContext
# ---------------------------------------------------------------------------


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that preserves framework-bound extra fields.

    User-supplied ``extra`` in individual log calls is merged, but
    framework fields take precedence on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with framework extra, framework wins on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class ServerContext:
    """Call-scoped context injected into handlers that declare a ``ctx`` parameter.

    Long-running handlers poll :meth:`is_active` (or :attr:`cancelled`) at
    natural work boundaries and return early once the call has expired or
    the client has gone away.  Polling is advisory: the server reports the
    supervisor's status regardless of what the handler returns afterwards.
    """

    __slots__ = ("_logger", "_method_name", "_peer", "_protocol_name", "_request_id", "_server_id", "_supervisor")

    def __init__(
        self,
        supervisor: CallSupervisor,
        *,
        server_id: str = "",
        method_name: str = "",
        protocol_name: str = "",
        peer: str = "",
    ) -> None:
        """Initialize with the call's supervisor and identifying fields."""
        self._supervisor = supervisor
        self._server_id = server_id
        self._method_name = method_name
        self._protocol_name = protocol_name
        self._peer = peer
        self._request_id = _current_request_id.get()
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def request_id(self) -> str:
        """Per-request correlation ID sent by the client."""
        return self._request_id

    @property
    def method(self) -> str:
        """Name of the method being served."""
        return self._method_name

    @property
    def peer(self) -> str:
        """Description of the client end of the transport."""
        return self._peer

    @property
    def supervisor(self) -> CallSupervisor:
        """The call's deadline/cancellation supervisor."""
        return self._supervisor

    @property
    def cancelled(self) -> bool:
        """Whether the client cancelled (or disconnected from) the call."""
        return self._supervisor.cancelled

    @property
    def expired(self) -> bool:
        """Whether the call's deadline has passed."""
        return self._supervisor.expired

    def is_active(self) -> bool:
        """Whether the handler should keep working."""
        return self._supervisor.is_active()

    def time_remaining(self) -> float | None:
        """Seconds left before the client's deadline, or ``None`` without one."""
        return self._supervisor.time_remaining()

    def abort(self, code: StatusCode, message: str = "") -> NoReturn:
        """End the call with the given status.

        Raises:
            RpcError: Always; the server turns it into the call's trailers.

        """
        raise RpcError(code, message, request_id=self._request_id)

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger with request context pre-bound.

        Returns:
            A ``LoggerAdapter`` with logger name
            ``calc_rpc.service.<ProtocolName>``.  Always includes
            ``server_id`` and ``method``; includes ``request_id`` and
            ``remote_addr`` when available.

        """
        if self._logger is None:
            base = logging.getLogger(f"calc_rpc.service.{self._protocol_name}")
            extra: dict[str, object] = {
                "server_id": self._server_id,
                "method": self._method_name,
            }
            if self._request_id:
                extra["request_id"] = self._request_id
            if self._peer:
                extra["remote_addr"] = self._peer
            self._logger = _ContextLoggerAdapter(base, extra)
        return self._logger


class RequestStream(Generic[T]):
    """Iterator over the client's request messages, handed to streaming handlers.

    Iteration ends when the client half-closes.  If the call expires or is
    cancelled while the handler waits, iteration raises the corresponding
    :class:`RpcError`.
    """

    __slots__ = ("_channel",)

    def __init__(self, channel: MessageChannel[T]) -> None:
        """Wrap the call's request channel."""
        self._channel = channel

    def __iter__(self) -> Iterator[T]:
        """Return self."""
        return self

    def __next__(self) -> T:
        """Return the next request message."""
        try:
            return self._channel.receive()
        except EndOfStream:
            raise StopIteration from None


# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_method_error(protocol_name: str, method_name: str, server_id: str, exc: BaseException) -> str:
    """Log an RPC method error and return the exception class name.

    Returns:
        The exception class name (for use as ``error_type``).

    """
    error_type = type(exc).__name__
    extra: dict[str, object] = {"server_id": server_id, "method": method_name, "error_type": error_type}
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _logger.error(
        "Error in %s.%s: %s",
        protocol_name,
        method_name,
        exc,
        exc_info=True,
        extra=extra,
    )
    return error_type


def _emit_access_log(
    protocol_name: str,
    method_name: str,
    method_type: str,
    server_id: str,
    remote_addr: str,
    duration_ms: float,
    status: Status,
    error_type: str = "",
    stats: CallStatistics | None = None,
) -> None:
    """Emit a structured access log record for a completed RPC call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    try:
        outcome: Literal["ok", "error"] = "ok" if status.ok else "error"
        extra: dict[str, object] = {
            "server_id": server_id,
            "protocol": protocol_name,
            "method": method_name,
            "method_type": method_type,
            "remote_addr": remote_addr,
            "duration_ms": round(duration_ms, 2),
            "status": outcome,
            "status_code": status.code.name,
            "error_type": error_type,
        }
        request_id = _current_request_id.get()
        if request_id:
            extra["request_id"] = request_id
        if stats is not None:
            extra["messages_received"] = stats.messages_received
            extra["messages_sent"] = stats.messages_sent
        _access_logger.info(
            "%s.%s %s",
            protocol_name,
            method_name,
            outcome,
            extra=extra,
        )
    except Exception:
        _logger.debug("Access log emission failed", exc_info=True)


def _drain(transport: RpcTransport) -> None:
    """Read and discard client input until the client hangs up."""
    with contextlib.suppress(*_TRANSPORT_ERRORS):
        while transport.reader.read(65536):
            pass


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Dispatches calls to an implementation, one transport per call."""

    __slots__ = ("_ctx_methods", "_impl", "_methods", "_protocol", "_server_id")

    def __init__(self, protocol: type, implementation: object, *, server_id: str | None = None) -> None:
        """Initialize with a protocol type and its implementation.

        Args:
            protocol: The Protocol class defining the RPC interface.
            implementation: Object implementing all methods from *protocol*.
            server_id: Optional server identifier; auto-generated if ``None``.

        Raises:
            TypeError: If *implementation* does not conform to *protocol*.

        """
        self._protocol = protocol
        self._impl = implementation
        self._methods = rpc_methods(protocol)
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        _validate_implementation(protocol, implementation, self._methods)

        # Detect which impl methods accept a `ctx` parameter.
        self._ctx_methods: frozenset[str] = frozenset(
            name for name in self._methods if _accepts_ctx(getattr(implementation, name))
        )

        _logger.info(
            "RpcServer created for %s (server_id=%s, methods=%d)",
            protocol.__name__,
            self._server_id,
            len(self._methods),
            extra={"server_id": self._server_id, "protocol": protocol.__name__, "method_count": len(self._methods)},
        )

    @property
    def methods(self) -> Mapping[str, RpcMethodInfo]:
        """Return method metadata for this server's protocol."""
        return self._methods

    @property
    def implementation(self) -> object:
        """The implementation object."""
        return self._impl

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def protocol_name(self) -> str:
        """Name of the Protocol class this server implements."""
        return self._protocol.__name__

    @property
    def ctx_methods(self) -> frozenset[str]:
        """Method names whose implementations accept a ctx parameter."""
        return self._ctx_methods

    def serve_call(self, transport: RpcTransport) -> None:
        """Handle one call over *transport*, then release it.

        Never raises: protocol errors are answered with a status-only
        response stream, handler errors become the call's trailers, and
        transport failures mean the client is gone.
        """
        served = False
        try:
            try:
                reader = ipc.open_stream(transport.reader)
                headers = _read_headers(reader)
            except RpcError as exc:
                _logger.warning("Rejected call: %s", exc, extra={"server_id": self._server_id})
                self._reject(transport, exc.status, request_id="")
                return
            except _TRANSPORT_ERRORS:
                _logger.debug("Client went away before sending headers", exc_info=True)
                return

            info = self._methods.get(headers.method)
            if info is None:
                available = sorted(self._methods)
                status = Status(
                    StatusCode.UNIMPLEMENTED,
                    f"Unknown method: '{headers.method}'. Available methods: {available}",
                )
                _logger.warning("%s", status.message, extra={"server_id": self._server_id, "method": headers.method})
                self._reject(transport, status, request_id=headers.request_id)
                return
            if reader.schema != info.request_schema:
                status = Status(StatusCode.INTERNAL, f"Request schema mismatch for '{info.name}'")
                self._reject(transport, status, request_id=headers.request_id)
                return

            token = _current_request_id.set(headers.request_id or _generate_request_id())
            try:
                served = True
                self._serve_method(transport, reader, info, headers)
            finally:
                _current_request_id.reset(token)
        finally:
            # Once a call is dispatched its request pump owns the transport.
            if not served:
                transport.close()

    def _reject(self, transport: RpcTransport, status: Status, *, request_id: str) -> None:
        with contextlib.suppress(*_TRANSPORT_ERRORS):
            _write_status_stream(transport.writer, status, server_id=self._server_id, request_id=request_id)
        transport.close_write()
        _drain(transport)

    def _serve_method(
        self,
        transport: RpcTransport,
        reader: ipc.RecordBatchStreamReader,
        info: RpcMethodInfo,
        headers: CallHeaders,
    ) -> None:
        start = time.monotonic()
        stats = CallStatistics()
        supervisor = CallSupervisor(headers.timeout, name=info.name)
        requests: MessageChannel[ArrowMessage] = MessageChannel(info.name)
        request_id = _current_request_id.get()

        def _close_requests(status: Status) -> None:
            requests.close(None if status.ok else status.to_error(request_id))

        supervisor.add_done_callback(_close_requests)

        pump = threading.Thread(
            target=self._pump_requests,
            args=(transport, reader, info, requests, supervisor, stats, request_id),
            name=f"calc-rpc-requests-{info.name}",
            daemon=True,
        )
        pump.start()

        ctx = ServerContext(
            supervisor,
            server_id=self._server_id,
            method_name=info.name,
            protocol_name=self.protocol_name,
            peer=transport.peer,
        )
        error_type = ""
        writer: ipc.RecordBatchStreamWriter | None = None
        try:
            writer = ipc.new_stream(transport.writer, info.response_schema)
            handler_status = self._dispatch(info, ctx, requests, writer, stats)
        except _TRANSPORT_ERRORS as exc:
            if wire_stream_logger.isEnabledFor(logging.DEBUG):
                wire_stream_logger.debug("Response write failed for %s: %r", info.name, exc)
            supervisor.cancel("Client disconnected")
            writer = None
            handler_status = OK_STATUS
        except RpcError as exc:
            handler_status = exc.status
            error_type = type(exc).__name__
        except Exception as exc:
            error_type = _log_method_error(self.protocol_name, info.name, self._server_id, exc)
            handler_status = Status(StatusCode.INTERNAL, f"{type(exc).__name__}: {exc}")

        # A deadline or cancellation that fired first overrides whatever the handler produced.
        supervisor.complete(handler_status)
        final = supervisor.status
        assert final is not None
        if supervisor.state != CallState.COMPLETED:
            error_type = error_type or final.code.name

        if writer is not None:
            try:
                _write_trailers(
                    writer, info.response_schema, final, server_id=self._server_id, request_id=request_id
                )
                writer.close()
            except _TRANSPORT_ERRORS:
                _logger.debug("Could not deliver trailers for %s", info.name, exc_info=True)
        transport.close_write()

        pump.join(timeout=_PUMP_JOIN_TIMEOUT)
        if pump.is_alive():
            transport.abort()

        _emit_access_log(
            self.protocol_name,
            info.name,
            info.method_type.value,
            self._server_id,
            transport.peer,
            (time.monotonic() - start) * 1000,
            final,
            error_type,
            stats=stats,
        )

    def _dispatch(
        self,
        info: RpcMethodInfo,
        ctx: ServerContext,
        requests: MessageChannel[ArrowMessage],
        writer: ipc.RecordBatchStreamWriter,
        stats: CallStatistics,
    ) -> Status:
        """Run the handler for one call and write its responses; return the handler's status."""
        if info.method_type.client_streams:
            arg: Any = RequestStream(requests)
        else:
            try:
                arg = requests.receive()
            except EndOfStream:
                return Status(StatusCode.INTERNAL, f"Missing request message for '{info.name}'")

        method = getattr(self._impl, info.name)
        result = method(arg, ctx=ctx) if info.name in self._ctx_methods else method(arg)

        if not info.method_type.server_streams:
            self._write_response(info, ctx, writer, result, stats)
            return OK_STATUS

        responses = iter(result)
        try:
            for response in responses:
                if not self._write_response(info, ctx, writer, response, stats):
                    break
        finally:
            close = getattr(responses, "close", None)
            if close is not None:
                close()
        return OK_STATUS

    @staticmethod
    def _write_response(
        info: RpcMethodInfo,
        ctx: ServerContext,
        writer: ipc.RecordBatchStreamWriter,
        response: object,
        stats: CallStatistics,
    ) -> bool:
        """Write one response unless the call is no longer active; return whether it was written."""
        if not isinstance(response, info.response_type):
            raise TypeError(
                f"{info.name}() expected to produce {info.response_type.__name__}, got {type(response).__name__}"
            )
        if not ctx.is_active():
            return False
        try:
            batch = response.to_batch()
        except CodecError as exc:
            raise RpcError(StatusCode.INTERNAL, str(exc)) from exc
        _write_message(writer, batch)
        stats.messages_sent += 1
        return True

    def _pump_requests(
        self,
        transport: RpcTransport,
        reader: ipc.RecordBatchStreamReader,
        info: RpcMethodInfo,
        requests: MessageChannel[ArrowMessage],
        supervisor: CallSupervisor,
        stats: CallStatistics,
        request_id: str,
    ) -> None:
        """Move request messages from the wire into *requests*, then watch for the client hanging up.

        End of input before the request stream's EOS, or end of connection
        while the call is still active, is the client's cancellation.  The
        pump owns *transport* and closes it once the client has hung up.
        """
        try:
            while True:
                try:
                    frame = _read_frame(reader)
                except StopIteration:
                    if wire_stream_logger.isEnabledFor(logging.DEBUG):
                        wire_stream_logger.debug("Client half-closed %s", info.name)
                    requests.close()
                    break
                if frame.kind != frame.MESSAGE:
                    _logger.debug("Ignoring %r control frame inside request stream", frame.kind)
                    continue
                try:
                    message = info.request_type.from_batch(frame.batch)
                except CodecError as exc:
                    supervisor.complete(Status(StatusCode.INTERNAL, f"Malformed request message: {exc}"))
                    if wire_stream_logger.isEnabledFor(logging.DEBUG):
                        wire_stream_logger.debug("Bad request batch: %s", fmt_batch(frame.batch))
                    continue
                stats.messages_received += 1
                with contextlib.suppress(InvalidStateError):
                    requests.send(message)
            # Anything after EOS is the client closing the connection.
            transport.reader.read(1)
        except _TRANSPORT_ERRORS as exc:
            if wire_stream_logger.isEnabledFor(logging.DEBUG):
                wire_stream_logger.debug("Request stream for %s broke: %r", info.name, exc)
        finally:
            transport.close()
        if supervisor.cancel("Client disconnected"):
            _logger.info(
                "Client cancelled %s",
                info.name,
                extra={"server_id": self._server_id, "method": info.name, "request_id": request_id},
            )
