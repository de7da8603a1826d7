"""Tests for error statuses: protocol misuse, handler failures, and transport loss."""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Iterator
from typing import Protocol

import pyarrow as pa
import pytest
from pyarrow import ipc

from calc_rpc.calculator import (
    CalculatorService,
    CalculatorServiceImpl,
    ComputeAverageRequest,
    SquareRootRequest,
    SumRequest,
    SumResponse,
)
from calc_rpc.codec import empty_batch
from calc_rpc.metadata import (
    FRAME_KIND_HEADERS,
    FRAME_KIND_KEY,
    FRAME_KIND_TRAILERS,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    STATUS_CODE_KEY,
    STATUS_MESSAGE_KEY,
)
from calc_rpc.rpc import (
    InvalidStateError,
    PipeConnector,
    PipeTransport,
    RpcClient,
    RpcError,
    RpcServer,
    SocketConnector,
    StatusCode,
    make_pipe_pair,
    serve_pipe,
)

def _calc_client(server_id: str) -> RpcClient:
    """Client for a calculator server whose records carry *server_id*."""
    server = RpcServer(CalculatorService, CalculatorServiceImpl(), server_id=server_id)
    return RpcClient(CalculatorService, PipeConnector(server))


def _wait_for_access_record(caplog: pytest.LogCaptureFixture, server_id: str) -> logging.LogRecord | None:
    """Poll until the server has logged the end of a call for *server_id*."""
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        for record in caplog.records:
            if record.name == "calc_rpc.access" and record.__dict__.get("server_id") == server_id:
                return record
        time.sleep(0.01)
    return None


# ---------------------------------------------------------------------------
# Test Protocols
# ---------------------------------------------------------------------------


class _Extended(Protocol):
    """Calculator plus a method the server does not have."""

    def divide(self, request: SumRequest) -> SumResponse: ...


class _Mismatched(Protocol):
    """``sum`` declared with the wrong request message."""

    def sum(self, request: SquareRootRequest) -> SumResponse: ...


class _Faulty(Protocol):
    """Handlers that misbehave."""

    def crash(self, request: SumRequest) -> SumResponse: ...

    def wrong_type(self, request: SumRequest) -> SumResponse: ...

    def crash_midway(self, request: SumRequest) -> Iterator[SumResponse]: ...


class _FaultyImpl:
    def crash(self, request: SumRequest) -> SumResponse:
        raise RuntimeError("kaput")

    def wrong_type(self, request: SumRequest) -> SumResponse:
        return request  # type: ignore[return-value]

    def crash_midway(self, request: SumRequest) -> Iterator[SumResponse]:
        yield SumResponse(sum_result=1)
        raise ZeroDivisionError("midway")


def _serve_raw(server: RpcServer) -> PipeTransport:
    """Start serving one call and return the raw client end."""
    client, server_side = make_pipe_pair()
    threading.Thread(target=server.serve_call, args=(server_side,), daemon=True).start()
    return client


def _read_trailers(client: PipeTransport) -> tuple[bytes, str]:
    reader = ipc.open_stream(client.reader)
    batch, metadata = reader.read_next_batch_with_custom_metadata()
    assert batch.num_rows == 0
    assert metadata[FRAME_KIND_KEY] == FRAME_KIND_TRAILERS
    return metadata[STATUS_CODE_KEY], metadata[STATUS_MESSAGE_KEY].decode()


class TestProtocolErrors:
    """Calls the server cannot dispatch."""

    def test_unknown_method(self, calc_server: RpcServer) -> None:
        """A method missing on the server fails with UNIMPLEMENTED."""
        with RpcClient(_Extended, PipeConnector(calc_server)) as client, pytest.raises(RpcError) as exc_info:
            client.call("divide", SumRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.UNIMPLEMENTED
        assert "Unknown method: 'divide'" in exc_info.value.message

    def test_request_schema_mismatch(self, calc_server: RpcServer) -> None:
        """A request whose schema differs from the method's fails with INTERNAL."""
        with RpcClient(_Mismatched, PipeConnector(calc_server)) as client, pytest.raises(RpcError) as exc_info:
            client.call("sum", SquareRootRequest(number=4))
        assert exc_info.value.code == StatusCode.INTERNAL
        assert "schema mismatch" in exc_info.value.message

    def test_missing_headers(self, calc_server: RpcServer) -> None:
        """A request stream that starts with a message is rejected."""
        client = _serve_raw(calc_server)
        writer = ipc.new_stream(client.writer, SumRequest.ARROW_SCHEMA)
        writer.write_batch(SumRequest(first_number=1, second_number=2).to_batch())
        writer.close()
        client.close_write()
        code, message = _read_trailers(client)
        client.close()
        assert int(code) == StatusCode.INTERNAL
        assert "headers frame" in message

    def test_unsupported_version(self, calc_server: RpcServer) -> None:
        """Headers carrying another protocol version are rejected."""
        client = _serve_raw(calc_server)
        metadata = pa.KeyValueMetadata(
            {FRAME_KIND_KEY: FRAME_KIND_HEADERS, RPC_METHOD_KEY: b"sum", REQUEST_VERSION_KEY: b"99"}
        )
        writer = ipc.new_stream(client.writer, SumRequest.ARROW_SCHEMA)
        writer.write_batch(empty_batch(SumRequest.ARROW_SCHEMA), custom_metadata=metadata)
        writer.close()
        client.close_write()
        code, message = _read_trailers(client)
        client.close()
        assert int(code) == StatusCode.INTERNAL
        assert "Unsupported request version" in message


class TestHandlerErrors:
    """Exceptions inside handlers become statuses."""

    def test_unhandled_exception_is_internal(self, caplog: pytest.LogCaptureFixture) -> None:
        """An unexpected exception maps to INTERNAL and is logged with its traceback."""
        with (
            caplog.at_level(logging.ERROR, logger="calc_rpc.rpc"),
            serve_pipe(_Faulty, _FaultyImpl()) as svc,
            pytest.raises(RpcError) as exc_info,
        ):
            svc.crash(SumRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.INTERNAL
        assert exc_info.value.message == "RuntimeError: kaput"
        records = [r for r in caplog.records if r.name == "calc_rpc.rpc" and "crash" in r.getMessage()]
        assert records
        assert records[0].exc_info is not None
        assert records[0].__dict__["error_type"] == "RuntimeError"

    def test_wrong_response_type_is_internal(self) -> None:
        """Returning something other than the declared response type is a server bug."""
        with serve_pipe(_Faulty, _FaultyImpl()) as svc, pytest.raises(RpcError) as exc_info:
            svc.wrong_type(SumRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.INTERNAL
        assert "expected to produce SumResponse" in exc_info.value.message

    def test_stream_error_after_responses(self) -> None:
        """Responses sent before a failure are delivered, then the error is raised."""
        with serve_pipe(_Faulty, _FaultyImpl()) as svc:
            reader = svc.crash_midway(SumRequest(first_number=1, second_number=2))
            assert next(reader) == SumResponse(sum_result=1)
            with pytest.raises(RpcError) as exc_info:
                next(reader)
        assert exc_info.value.code == StatusCode.INTERNAL
        assert "midway" in exc_info.value.message


class TestTransportErrors:
    """Connectivity failures are UNAVAILABLE."""

    def test_connection_refused(self) -> None:
        """Dialing a closed port fails the call with UNAVAILABLE."""
        with socket.socket() as probe:
            probe.bind(("127.0.0.1", 0))
            port = probe.getsockname()[1]
        with (
            RpcClient(CalculatorService, SocketConnector("127.0.0.1", port, connect_timeout=2)) as client,
            pytest.raises(RpcError) as exc_info,
        ):
            client.call("sum", SumRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.UNAVAILABLE

    def test_response_without_trailers(self) -> None:
        """A server that hangs up without trailers fails the call with UNAVAILABLE."""

        class _HangUp:
            def connect(self) -> PipeTransport:
                client, server_side = make_pipe_pair()

                def run() -> None:
                    ipc.open_stream(server_side.reader).read_next_batch()
                    with ipc.new_stream(server_side.writer, SumResponse.ARROW_SCHEMA):
                        pass
                    server_side.close()

                threading.Thread(target=run, daemon=True).start()
                return client

        with RpcClient(CalculatorService, _HangUp()) as client, pytest.raises(RpcError) as exc_info:
            client.call("sum", SumRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.UNAVAILABLE


class TestClientMisuse:
    """Local state errors raised before anything reaches the server."""

    def test_unknown_method_name(self, pipe_client: RpcClient) -> None:
        """Calling a name the Protocol lacks is an AttributeError."""
        with pytest.raises(AttributeError, match="no RPC method 'divide'"):
            pipe_client.call("divide", SumRequest(first_number=1, second_number=2))

    def test_wrong_call_pattern(self, pipe_client: RpcClient) -> None:
        """Opening a method with the wrong pattern is a state error."""
        with pytest.raises(InvalidStateError, match="client_stream"):
            pipe_client.call("compute_average", ComputeAverageRequest(number=1))  # type: ignore[arg-type]

    def test_close_and_receive_twice(self, pipe_client: RpcClient) -> None:
        """The aggregate response can be collected only once."""
        with pipe_client.open_client_stream("compute_average") as writer:
            writer.send(ComputeAverageRequest(number=3))
            assert writer.close_and_receive().average == 3.0  # type: ignore[attr-defined]
            with pytest.raises(InvalidStateError):
                writer.close_and_receive()
            with pytest.raises(InvalidStateError):
                writer.send(ComputeAverageRequest(number=4))

    def test_wrong_request_type_ends_server_call(self, caplog: pytest.LogCaptureFixture) -> None:
        """A request of the wrong type raises locally and the server-side call still finishes."""
        with caplog.at_level(logging.INFO, logger="calc_rpc.access"), _calc_client("misuse-type") as client:
            with pytest.raises(TypeError, match="SumRequest"):
                client.call("sum", SquareRootRequest(number=1))  # type: ignore[arg-type]
            record = _wait_for_access_record(caplog, "misuse-type")
        assert record is not None
        assert record.__dict__["status"] == "error"

    def test_unencodable_request_is_invalid_argument(self, caplog: pytest.LogCaptureFixture) -> None:
        """An operand outside int32 fails the call with INVALID_ARGUMENT and releases the server."""
        with caplog.at_level(logging.INFO, logger="calc_rpc.access"), _calc_client("misuse-range") as client:
            with pytest.raises(RpcError) as exc_info:
                client.call("sum", SumRequest(first_number=2**40, second_number=1))
            record = _wait_for_access_record(caplog, "misuse-range")
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
        assert "SumRequest" in exc_info.value.message
        assert record is not None
        assert record.__dict__["status"] == "error"

    def test_unencodable_stream_message_ends_call(self, pipe_client: RpcClient) -> None:
        """On a client stream the encoding failure is raised and the call is over."""
        writer = pipe_client.open_client_stream("compute_average")
        writer.send(ComputeAverageRequest(number=1))
        with pytest.raises(RpcError) as exc_info:
            writer.send(ComputeAverageRequest(number=2**40))
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
        assert writer.status is not None
        assert writer.status.code == StatusCode.INVALID_ARGUMENT
        with pytest.raises(RpcError) as exc_info:
            writer.close_and_receive()
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
