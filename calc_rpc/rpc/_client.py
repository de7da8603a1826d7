# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client side: per-call state machine, the four call handles, and typed proxies."""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from enum import Enum
from types import TracebackType
from typing import Any, Generic, TypeVar, cast

from pyarrow import ipc

from calc_rpc.codec import ArrowMessage, CodecError
from calc_rpc.rpc._channel import MessageChannel
from calc_rpc.rpc._common import (
    EndOfStream,
    InvalidStateError,
    MethodType,
    RpcError,
    Status,
    StatusCode,
    _generate_request_id,
    _logger,
)
from calc_rpc.rpc._deadline import CallState, CallSupervisor
from calc_rpc.rpc._debug import wire_stream_logger, wire_transport_logger
from calc_rpc.rpc._transport import Connector, RpcTransport
from calc_rpc.rpc._types import RpcMethodInfo, rpc_methods
from calc_rpc.rpc._wire import (
    _TRANSPORT_ERRORS,
    CallHeaders,
    Frame,
    _open_request_stream,
    _read_frame,
    _status_from_trailers,
    _write_message,
)

P = TypeVar("P")

# ---------------------------------------------------------------------------
# ClientCall: one call's stream state
# ---------------------------------------------------------------------------


class SendState(Enum):
    """Send-side state of a call's stream."""

    OPEN = "open"
    HALF_CLOSED = "half_closed"
    CLOSED = "closed"


class ReceiveState(Enum):
    """Receive-side state of a call's stream."""

    OPEN = "open"
    ENDED = "ended"
    ERRORED = "errored"


class ClientCall:
    """One in-flight call: its transport, send side, response pump, and supervisor.

    The send side is written only by the caller's thread(s) through
    :meth:`send` / :meth:`close_send`.  A daemon thread pumps response
    frames into a :class:`MessageChannel` until the trailers arrive.  The
    terminal :class:`Status` is resolved exactly once by the call's
    :class:`CallSupervisor`: by the trailers, a transport failure, the
    deadline, or :meth:`cancel`.

    Expiry and cancellation are preemptive: the response channel is closed
    with its buffer discarded, so nothing already received is delivered
    afterwards, and the transport is aborted so the server sees the client
    go away.
    """

    __slots__ = (
        "_info",
        "_pump",
        "_request_id",
        "_responses",
        "_send_lock",
        "_send_state",
        "_supervisor",
        "_transport",
        "_writer",
    )

    def __init__(self, connector: Connector, info: RpcMethodInfo, *, timeout: float | None = None) -> None:
        """Open the call: connect, send the headers, and start the response pump.

        Failures while opening do not raise; they resolve the call's status
        (``UNAVAILABLE`` for connectivity, ``DEADLINE_EXCEEDED`` for an
        already-elapsed timeout), which the next operation surfaces.
        """
        self._info = info
        self._request_id = _generate_request_id()
        self._responses: MessageChannel[ArrowMessage] = MessageChannel(info.name)
        self._send_lock = threading.Lock()
        self._send_state = SendState.OPEN
        self._transport: RpcTransport | None = None
        self._writer: ipc.RecordBatchStreamWriter | None = None
        self._pump: threading.Thread | None = None
        self._supervisor = CallSupervisor(timeout, name=info.name)
        self._supervisor.add_done_callback(self._on_done)

        if wire_stream_logger.isEnabledFor(logging.DEBUG):
            wire_stream_logger.debug(
                "Call open: method=%s, type=%s, request_id=%s, timeout=%s",
                info.name,
                info.method_type.value,
                self._request_id,
                timeout,
            )
        if not self._supervisor.is_active():
            return

        try:
            transport = connector.connect()
        except OSError as exc:
            self._supervisor.complete(Status(StatusCode.UNAVAILABLE, f"Failed to connect for '{info.name}': {exc}"))
            return
        self._transport = transport
        headers = CallHeaders(method=info.name, request_id=self._request_id, timeout=self._supervisor.time_remaining())
        try:
            with self._send_lock:
                self._writer = _open_request_stream(transport.writer, info.request_schema, headers)
        except _TRANSPORT_ERRORS as exc:
            self._fail_transport(exc)
        if not self._supervisor.is_active():
            transport.close()
            return

        self._pump = threading.Thread(
            target=self._pump_responses,
            args=(transport,),
            name=f"calc-rpc-responses-{info.name}",
            daemon=True,
        )
        self._pump.start()

    # --- Inspection ---

    @property
    def method(self) -> RpcMethodInfo:
        """Metadata of the method being called."""
        return self._info

    @property
    def request_id(self) -> str:
        """Correlation ID sent to the server in the call headers."""
        return self._request_id

    @property
    def supervisor(self) -> CallSupervisor:
        """The call's deadline/cancellation supervisor."""
        return self._supervisor

    @property
    def status(self) -> Status | None:
        """The terminal status, or ``None`` while the call is running."""
        return self._supervisor.status

    @property
    def send_state(self) -> SendState:
        """State of the request side."""
        status = self._supervisor.status
        if status is not None and not status.ok:
            return SendState.CLOSED
        return self._send_state

    @property
    def receive_state(self) -> ReceiveState:
        """State of the response side."""
        if not self._responses.closed:
            return ReceiveState.OPEN
        return ReceiveState.ENDED if self._responses.error is None else ReceiveState.ERRORED

    def is_active(self) -> bool:
        """Whether the call has not yet reached a terminal status."""
        return self._supervisor.is_active()

    def time_remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` without one."""
        return self._supervisor.time_remaining()

    def wait(self, timeout: float | None = None) -> Status | None:
        """Block until the call is terminal and return its status (``None`` on timeout)."""
        self._supervisor.wait(timeout)
        return self._supervisor.status

    # --- Send side ---

    def send(self, message: ArrowMessage) -> bool:
        """Write one request message.

        Returns:
            ``True`` if the message was written, ``False`` if the server
            already finished the call successfully (the message is dropped).

        Raises:
            TypeError: If *message* is not the method's request type.
            InvalidStateError: If the send side was already closed.
            RpcError: If the call has failed, expired, or been cancelled, or
                ``INVALID_ARGUMENT`` if *message* cannot be encoded, which
                also ends the call.

        """
        if not isinstance(message, self._info.request_type):
            raise TypeError(
                f"{self._info.name}() expects {self._info.request_type.__name__}, got {type(message).__name__}"
            )
        with self._send_lock:
            if self._send_state is not SendState.OPEN:
                raise InvalidStateError(f"send() after close_send() on '{self._info.name}'")
            if not self._check_sendable():
                return False
            assert self._writer is not None
            try:
                batch = message.to_batch()
            except CodecError as exc:
                status = Status(StatusCode.INVALID_ARGUMENT, str(exc))
                self._fail(status)
                raise status.to_error(self._request_id) from exc
            try:
                _write_message(self._writer, batch)
            except _TRANSPORT_ERRORS as exc:
                self._fail_transport(exc)
                return self._check_sendable()
        return True

    def close_send(self) -> None:
        """Half-close the request side.  Idempotent.

        Raises:
            RpcError: If the call has failed, expired, or been cancelled.

        """
        with self._send_lock:
            if self._send_state is not SendState.OPEN:
                return
            self._send_state = SendState.HALF_CLOSED
            if not self._check_sendable():
                return
            assert self._writer is not None
            try:
                self._writer.close()
            except _TRANSPORT_ERRORS as exc:
                self._fail_transport(exc)
                self._check_sendable()
                return
        if wire_stream_logger.isEnabledFor(logging.DEBUG):
            wire_stream_logger.debug("Call half-closed: method=%s, request_id=%s", self._info.name, self._request_id)

    def cancel(self, message: str = "Call cancelled by client") -> bool:
        """Cancel the call; returns ``False`` if it had already finished."""
        return self._supervisor.cancel(message)

    # --- Receive side ---

    def receive(self, timeout: float | None = None) -> ArrowMessage:
        """Return the next response message.

        Raises:
            EndOfStream: The server finished the call with ``OK`` and every
                response has been delivered.
            RpcError: The call terminated with a non-OK status.
            TimeoutError: *timeout* seconds passed without a message.

        """
        return self._responses.receive(timeout)

    def __iter__(self) -> Iterator[ArrowMessage]:
        """Yield responses until the call ends; raise its error if it failed."""
        return iter(self._responses)

    # --- Internals ---

    def _check_sendable(self) -> bool:
        status = self._supervisor.status
        if status is None:
            return True
        if status.ok:
            return False
        raise status.to_error(self._request_id)

    def _fail(self, status: Status) -> None:
        """End the call with *status* and abort the transport so the server sees the client go away."""
        if self._supervisor.complete(status) and self._transport is not None:
            self._transport.abort()

    def _fail_transport(self, exc: BaseException) -> None:
        self._fail(Status(StatusCode.UNAVAILABLE, f"Transport failed during call to '{self._info.name}': {exc}"))

    def _on_done(self, status: Status) -> None:
        state = self._supervisor.state
        if status.ok:
            self._responses.close()
        else:
            self._responses.close(status.to_error(self._request_id), discard=state is not CallState.COMPLETED)
        if state is not CallState.COMPLETED and self._transport is not None:
            self._transport.abort()
        if wire_stream_logger.isEnabledFor(logging.DEBUG):
            wire_stream_logger.debug(
                "Call done: method=%s, request_id=%s, state=%s, status=%s",
                self._info.name,
                self._request_id,
                state.value,
                status,
            )

    def _pump_responses(self, transport: RpcTransport) -> None:
        """Move response frames into the response channel until the trailers arrive."""
        status: Status | None = None
        try:
            reader = ipc.open_stream(transport.reader)
            while True:
                try:
                    frame = _read_frame(reader)
                except StopIteration:
                    status = Status(
                        StatusCode.UNAVAILABLE, f"Response stream for '{self._info.name}' ended without trailers"
                    )
                    break
                if frame.is_trailers:
                    status = _status_from_trailers(frame)
                    break
                if frame.kind != Frame.MESSAGE:
                    continue
                try:
                    message = self._info.response_type.from_batch(frame.batch)
                except CodecError as exc:
                    status = Status(StatusCode.INTERNAL, f"Malformed response message: {exc}")
                    break
                try:
                    self._responses.send(message)
                except InvalidStateError:
                    # The call was expired or cancelled; stop reading.
                    break
        except _TRANSPORT_ERRORS as exc:
            status = Status(StatusCode.UNAVAILABLE, f"Transport failed during call to '{self._info.name}': {exc}")
        finally:
            if status is not None:
                self._supervisor.complete(status)
            transport.close()


# ---------------------------------------------------------------------------
# Call handles
# ---------------------------------------------------------------------------


def _send_single(call: ClientCall, request: ArrowMessage) -> None:
    """Send the one request of a unary or server-streaming call and half-close.

    A failed call keeps its status; it is raised by the receive side.  Any
    other error cancels the call before it propagates, so the server is not
    left waiting for a request that never comes.
    """
    try:
        call.send(request)
        call.close_send()
    except RpcError:
        pass
    except BaseException:
        call.cancel("Request could not be sent")
        raise


def _single_response(call: ClientCall) -> ArrowMessage:
    """Collect the call's responses, requiring exactly one."""
    responses = list(call)
    if len(responses) != 1:
        raise RpcError(
            StatusCode.INTERNAL,
            f"'{call.method.name}' expected exactly one response, received {len(responses)}",
            request_id=call.request_id,
        )
    return responses[0]


class _CallHandle:
    """Shared surface of the streaming handles."""

    __slots__ = ("_call",)

    def __init__(self, call: ClientCall) -> None:
        self._call = call

    @property
    def call(self) -> ClientCall:
        """The underlying call."""
        return self._call

    @property
    def request_id(self) -> str:
        """Correlation ID of the call."""
        return self._call.request_id

    @property
    def status(self) -> Status | None:
        """The terminal status, or ``None`` while the call is running."""
        return self._call.status

    def time_remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` without one."""
        return self._call.time_remaining()

    def cancel(self, message: str = "Call cancelled by client") -> bool:
        """Cancel the call; no further responses are delivered."""
        return self._call.cancel(message)

    def wait(self, timeout: float | None = None) -> Status | None:
        """Block until the call is terminal and return its status."""
        return self._call.wait(timeout)

    def __enter__(self) -> Any:
        """Enter the context."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Cancel the call if it is still running."""
        if self._call.is_active():
            self._call.cancel("Call abandoned by client")


class UnaryCall:
    """Unary executor: one request in, exactly one response out.  No retries."""

    __slots__ = ("_connector", "_info")

    def __init__(self, connector: Connector, info: RpcMethodInfo) -> None:
        """Bind the executor to a connector and a unary method."""
        if info.method_type is not MethodType.UNARY:
            raise InvalidStateError(f"'{info.name}' is a {info.method_type.value} method, not unary")
        self._connector = connector
        self._info = info

    def __call__(self, request: ArrowMessage, *, timeout: float | None = None) -> ArrowMessage:
        """Execute the call.

        Raises:
            RpcError: ``INVALID_ARGUMENT`` from a server precondition,
                ``DEADLINE_EXCEEDED`` when *timeout* elapses first,
                ``UNAVAILABLE`` on transport failure, ``INTERNAL`` when the
                server did not produce exactly one response.

        """
        call = ClientCall(self._connector, self._info, timeout=timeout)
        _send_single(call, request)
        return _single_response(call)


class ServerStreamReader(_CallHandle):
    """Lazy, non-restartable iterator over a server-streaming call's responses.

    Responses arrive in send order.  Iteration ends normally on the
    server's ``OK`` trailers; any other outcome raises :class:`RpcError`.
    Calling the method again opens an independent stream.
    """

    __slots__ = ()

    def __iter__(self) -> Iterator[ArrowMessage]:
        """Return self."""
        return self

    def __next__(self) -> ArrowMessage:
        """Return the next response."""
        try:
            return self._call.receive()
        except EndOfStream:
            raise StopIteration from None

    def receive(self, timeout: float | None = None) -> ArrowMessage:
        """Return the next response, raising :class:`EndOfStream` at the end."""
        return self._call.receive(timeout)

    def __enter__(self) -> ServerStreamReader:
        """Enter the context."""
        return self


class ClientStreamWriter(_CallHandle):
    """Client-streaming handle: send requests, then close to get the aggregate response."""

    __slots__ = ()

    def send(self, request: ArrowMessage) -> bool:
        """Send one request.

        Raises:
            InvalidStateError: If :meth:`close_and_receive` was already called.
            RpcError: If the call has failed, expired, or been cancelled.

        """
        return self._call.send(request)

    def close_and_receive(self) -> ArrowMessage:
        """Half-close the request side and wait for the single response.

        Raises:
            InvalidStateError: If called twice.
            RpcError: If the call terminated with a non-OK status.

        """
        if self._call.send_state is SendState.HALF_CLOSED:
            raise InvalidStateError(f"close_and_receive() already called on '{self._call.method.name}'")
        with contextlib.suppress(RpcError):
            self._call.close_send()
        return _single_response(self._call)

    def __enter__(self) -> ClientStreamWriter:
        """Enter the context."""
        return self


class BidiStream(_CallHandle):
    """Bidirectional handle with independent send and receive sides.

    One thread may drive :meth:`send` / :meth:`close_send` while another
    drives :meth:`receive` or iteration; there is no pairing between the
    Nth request and the Nth response.
    """

    __slots__ = ("_sender",)

    def __init__(self, call: ClientCall, sender: threading.Thread | None = None) -> None:
        """Wrap *call*; *sender* is the thread feeding its requests, if any."""
        super().__init__(call)
        self._sender = sender

    @property
    def sender(self) -> threading.Thread | None:
        """Background thread sending the requests, when the handle owns one."""
        return self._sender

    def wait(self, timeout: float | None = None) -> Status | None:
        """Block until the call is terminal and the request sender, if any, has stopped."""
        status = self._call.wait(timeout)
        if status is not None and self._sender is not None:
            self._sender.join(timeout)
        return status

    def send(self, request: ArrowMessage) -> bool:
        """Send one request (see :meth:`ClientCall.send`)."""
        return self._call.send(request)

    def close_send(self) -> None:
        """Signal that no more requests follow."""
        self._call.close_send()

    def receive(self, timeout: float | None = None) -> ArrowMessage:
        """Return the next response, raising :class:`EndOfStream` at the end."""
        return self._call.receive(timeout)

    def __iter__(self) -> Iterator[ArrowMessage]:
        """Yield responses until the server ends the stream."""
        return iter(self._call)

    def __enter__(self) -> BidiStream:
        """Enter the context."""
        return self


class BidiCoordinator:
    """Run a bidirectional call's send and receive loops on two threads and join them.

    Each loop owns one side of the stream.  :meth:`run` returns only after
    both loops have reached a terminal state.  A local failure on either
    side (an exception from the request iterable or from *on_response*)
    cancels the call so the other side terminates too.
    """

    __slots__ = ("_stream",)

    def __init__(self, stream: BidiStream) -> None:
        """Wrap an open bidirectional stream."""
        self._stream = stream

    def run(
        self,
        requests: Iterable[ArrowMessage],
        on_response: Callable[[ArrowMessage], object],
        *,
        send_interval: float = 0.0,
    ) -> Status:
        """Drive the call to completion.

        Args:
            requests: Messages to send, in order; the send side is
                half-closed once it is exhausted.
            on_response: Called with each response, in arrival order.
            send_interval: Pause between consecutive sends, in seconds.

        Returns:
            The call's ``OK`` status.

        Raises:
            RpcError: If the call terminated with a non-OK status.
            Exception: The first local failure from either loop.

        """
        stream = self._stream
        failures: list[BaseException] = []

        def send_loop() -> None:
            try:
                for i, request in enumerate(requests):
                    if i and send_interval > 0 and stream.wait(send_interval) is not None:
                        return
                    if not stream.send(request):
                        return
                stream.close_send()
            except RpcError:
                # The call is terminal; its status is reported by run().
                return
            except Exception as exc:
                failures.append(exc)
                stream.cancel(f"Send loop failed: {type(exc).__name__}: {exc}")

        def receive_loop() -> None:
            try:
                for response in stream:
                    on_response(response)
            except RpcError:
                return
            except Exception as exc:
                failures.append(exc)
                stream.cancel(f"Receive loop failed: {type(exc).__name__}: {exc}")

        name = stream.call.method.name
        sender = threading.Thread(target=send_loop, name=f"calc-rpc-bidi-send-{name}", daemon=True)
        receiver = threading.Thread(target=receive_loop, name=f"calc-rpc-bidi-receive-{name}", daemon=True)
        sender.start()
        receiver.start()
        sender.join()
        receiver.join()

        if failures:
            raise failures[0]
        status = stream.wait()
        assert status is not None
        if not status.ok:
            raise status.to_error(stream.request_id)
        return status


# ---------------------------------------------------------------------------
# RpcClient: explicit call handles
# ---------------------------------------------------------------------------


class RpcClient:
    """Opens calls against a service Protocol through a :class:`Connector`.

    Every call gets its own transport, so one client may be shared across
    threads.
    """

    __slots__ = ("_connector", "_default_timeout", "_methods", "_protocol")

    def __init__(self, protocol: type, connector: Connector, *, default_timeout: float | None = None) -> None:
        """Initialize with a protocol type and a connector.

        Args:
            protocol: The Protocol class defining the RPC interface.
            connector: Opens one transport per call.
            default_timeout: Timeout applied to calls that do not pass one.

        """
        self._protocol = protocol
        self._connector = connector
        self._methods = rpc_methods(protocol)
        self._default_timeout = default_timeout

    @property
    def protocol(self) -> type:
        """The Protocol class."""
        return self._protocol

    def _method(self, name: str, expected: MethodType) -> RpcMethodInfo:
        info = self._methods.get(name)
        if info is None:
            raise AttributeError(f"{self._protocol.__name__} has no RPC method '{name}'")
        if info.method_type is not expected:
            raise InvalidStateError(f"'{name}' is a {info.method_type.value} method, not {expected.value}")
        return info

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self._default_timeout

    def call(self, method: str, request: ArrowMessage, *, timeout: float | None = None) -> ArrowMessage:
        """Execute a unary call and return its response."""
        return UnaryCall(self._connector, self._method(method, MethodType.UNARY))(
            request, timeout=self._timeout(timeout)
        )

    def open_server_stream(
        self, method: str, request: ArrowMessage, *, timeout: float | None = None
    ) -> ServerStreamReader:
        """Start a server-streaming call."""
        info = self._method(method, MethodType.SERVER_STREAM)
        call = ClientCall(self._connector, info, timeout=self._timeout(timeout))
        _send_single(call, request)
        return ServerStreamReader(call)

    def open_client_stream(self, method: str, *, timeout: float | None = None) -> ClientStreamWriter:
        """Start a client-streaming call."""
        info = self._method(method, MethodType.CLIENT_STREAM)
        return ClientStreamWriter(ClientCall(self._connector, info, timeout=self._timeout(timeout)))

    def open_bidi_stream(self, method: str, *, timeout: float | None = None) -> BidiStream:
        """Start a bidirectional call."""
        info = self._method(method, MethodType.BIDI_STREAM)
        return BidiStream(ClientCall(self._connector, info, timeout=self._timeout(timeout)))

    def close(self) -> None:
        """Release the client (calls own their transports, so this only logs)."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcClient close: protocol=%s", self._protocol.__name__)

    def __enter__(self) -> RpcClient:
        """Enter the context."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the client."""
        self.close()


# ---------------------------------------------------------------------------
# _RpcProxy / RpcConnection: typed, Protocol-shaped calls
# ---------------------------------------------------------------------------


class _RpcProxy:
    """Dynamic proxy whose methods mirror the Protocol's signatures.

    * unary: ``proxy.m(request, timeout=None) -> response``
    * server stream: ``proxy.m(request, timeout=None) -> ServerStreamReader``
    * client stream: ``proxy.m(requests, timeout=None) -> response``
    * bidi stream: ``proxy.m(requests, timeout=None) -> BidiStream`` whose
      requests are sent from a background thread that
      :meth:`BidiStream.wait` joins
    """

    def __init__(self, client: RpcClient) -> None:
        self._client = client
        self._methods = rpc_methods(client.protocol)

    def __getattr__(self, name: str) -> Any:
        info = self._methods.get(name)
        if info is None:
            raise AttributeError(f"{self._client.protocol.__name__} has no RPC method '{name}'")

        if info.method_type is MethodType.UNARY:
            caller = self._make_unary_caller(info)
        elif info.method_type is MethodType.SERVER_STREAM:
            caller = self._make_server_stream_caller(info)
        elif info.method_type is MethodType.CLIENT_STREAM:
            caller = self._make_client_stream_caller(info)
        else:
            caller = self._make_bidi_caller(info)

        self.__dict__[name] = caller
        return caller

    def _make_unary_caller(self, info: RpcMethodInfo) -> Callable[..., ArrowMessage]:
        client = self._client

        def caller(request: ArrowMessage, *, timeout: float | None = None) -> ArrowMessage:
            return client.call(info.name, request, timeout=timeout)

        return caller

    def _make_server_stream_caller(self, info: RpcMethodInfo) -> Callable[..., ServerStreamReader]:
        client = self._client

        def caller(request: ArrowMessage, *, timeout: float | None = None) -> ServerStreamReader:
            return client.open_server_stream(info.name, request, timeout=timeout)

        return caller

    def _make_client_stream_caller(self, info: RpcMethodInfo) -> Callable[..., ArrowMessage]:
        client = self._client

        def caller(requests: Iterable[ArrowMessage], *, timeout: float | None = None) -> ArrowMessage:
            writer = client.open_client_stream(info.name, timeout=timeout)
            try:
                for request in requests:
                    writer.send(request)
            except RpcError:
                # Surfaced with the call's status by close_and_receive().
                pass
            except BaseException:
                writer.cancel("Request iterator failed")
                raise
            return writer.close_and_receive()

        return caller

    def _make_bidi_caller(self, info: RpcMethodInfo) -> Callable[..., BidiStream]:
        client = self._client

        def caller(requests: Iterable[ArrowMessage], *, timeout: float | None = None) -> BidiStream:
            call = client.open_bidi_stream(info.name, timeout=timeout).call

            def send_all() -> None:
                try:
                    for request in requests:
                        if not call.send(request):
                            return
                    call.close_send()
                except RpcError:
                    return
                except Exception as exc:
                    _logger.warning("Request iterator for %s failed", info.name, exc_info=True)
                    call.cancel(f"Request iterator failed: {type(exc).__name__}: {exc}")

            sender = threading.Thread(target=send_all, name=f"calc-rpc-bidi-send-{info.name}", daemon=True)
            sender.start()
            return BidiStream(call, sender)

        return caller


class RpcConnection(Generic[P]):
    """Context manager that provides a typed RPC proxy over a connector.

    The type parameter ``P`` is the Protocol class, enabling IDE
    autocompletion for all methods defined on the protocol::

        with RpcConnection(CalculatorService, connector) as svc:
            result = svc.sum(SumRequest(first_number=3, second_number=10))

    """

    __slots__ = ("_client",)

    def __init__(self, protocol: type[P], connector: Connector, *, default_timeout: float | None = None) -> None:
        """Initialize with a protocol type and connector."""
        self._client = RpcClient(protocol, connector, default_timeout=default_timeout)

    @property
    def client(self) -> RpcClient:
        """The explicit-handle client behind the proxy."""
        return self._client

    def __enter__(self) -> P:
        """Enter the context and return a typed proxy."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcConnection open: protocol=%s", self._client.protocol.__name__)
        return cast(P, _RpcProxy(self._client))

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the client."""
        self._client.close()
