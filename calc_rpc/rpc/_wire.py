"""Wire framing: headers, messages, and trailers over Arrow IPC streams.

Each call owns one transport and writes exactly one IPC stream per
direction::

    Client->Server: [IPC stream: request_schema
                     + headers batch (0 rows, calc_rpc.frame=headers)
                     + 0..N message batches (1 row each)
                     + EOS]                          EOS == half-close
    Server->Client: [IPC stream: response_schema
                     + 0..N message batches (1 row each)
                     + trailers batch (0 rows, calc_rpc.frame=trailers)
                     + EOS]

Headers carry the method name, protocol version, request id and the
remaining time budget.  Trailers carry the terminal status.  Control frames
are zero-row batches distinguished by their custom metadata, so they share
the schema of the data batches around them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import IOBase

import pyarrow as pa
from pyarrow import ipc

from calc_rpc.codec import empty_batch
from calc_rpc.metadata import (
    FRAME_KIND_HEADERS,
    FRAME_KIND_KEY,
    FRAME_KIND_TRAILERS,
    REQUEST_ID_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    SERVER_ID_KEY,
    STATUS_CODE_KEY,
    STATUS_MESSAGE_KEY,
    TIMEOUT_MS_KEY,
    get_str,
)
from calc_rpc.rpc._common import RpcError, Status, StatusCode
from calc_rpc.rpc._debug import (
    fmt_batch,
    fmt_metadata,
    fmt_schema,
    wire_request_logger,
    wire_response_logger,
)

# Exceptions that indicate the peer disconnected or the IPC data is
# truncated/corrupt.  ValueError covers I/O on a file closed by an abort.
_TRANSPORT_ERRORS = (
    BrokenPipeError,
    ConnectionResetError,
    ConnectionAbortedError,
    EOFError,
    OSError,
    ValueError,
    pa.ArrowInvalid,
)


@dataclass(frozen=True)
class CallHeaders:
    """Decoded request headers.

    Attributes:
        method: Method name requested by the client.
        request_id: Client-generated correlation id.
        timeout: Remaining time budget in seconds, or ``None``.

    """

    method: str
    request_id: str = ""
    timeout: float | None = None


class Frame:
    """A batch read off the wire, classified as a message or a control frame."""

    __slots__ = ("batch", "kind", "metadata")

    MESSAGE = b"message"

    def __init__(self, batch: pa.RecordBatch, metadata: pa.KeyValueMetadata | None) -> None:
        self.batch = batch
        self.metadata = metadata
        kind = metadata.get(FRAME_KIND_KEY) if metadata is not None else None
        self.kind: bytes = kind if kind is not None and batch.num_rows == 0 else self.MESSAGE

    @property
    def is_trailers(self) -> bool:
        return self.kind == FRAME_KIND_TRAILERS

    @property
    def is_headers(self) -> bool:
        return self.kind == FRAME_KIND_HEADERS


# ---------------------------------------------------------------------------
# Client -> Server
# ---------------------------------------------------------------------------


def _open_request_stream(
    sink: IOBase,
    request_schema: pa.Schema,
    headers: CallHeaders,
) -> ipc.RecordBatchStreamWriter:
    """Start the request IPC stream and write the headers frame."""
    md: dict[bytes, bytes] = {
        FRAME_KIND_KEY: FRAME_KIND_HEADERS,
        RPC_METHOD_KEY: headers.method.encode(),
        REQUEST_VERSION_KEY: REQUEST_VERSION,
        REQUEST_ID_KEY: headers.request_id.encode(),
    }
    if headers.timeout is not None:
        md[TIMEOUT_MS_KEY] = str(max(0, int(headers.timeout * 1000))).encode()
    custom_metadata = pa.KeyValueMetadata(md)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write headers: schema=%s, metadata=%s",
            fmt_schema(request_schema),
            fmt_metadata(custom_metadata),
        )
    writer = ipc.new_stream(sink, request_schema)
    writer.write_batch(empty_batch(request_schema), custom_metadata=custom_metadata)
    return writer


def _read_headers(reader: ipc.RecordBatchStreamReader) -> CallHeaders:
    """Read and validate the headers frame at the start of a request stream.

    Raises:
        RpcError: ``INTERNAL`` if the frame is missing, malformed, or
            carries an unsupported protocol version.

    """
    try:
        batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    except StopIteration:
        raise RpcError(StatusCode.INTERNAL, "Request stream ended before headers were sent") from None
    frame = Frame(batch, custom_metadata)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Read headers: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata))
    if not frame.is_headers:
        raise RpcError(StatusCode.INTERNAL, "Request stream does not start with a headers frame")
    method = get_str(custom_metadata, RPC_METHOD_KEY)
    if not method:
        raise RpcError(StatusCode.INTERNAL, "Missing 'calc_rpc.method' in request headers")
    version = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata is not None else None
    if version != REQUEST_VERSION:
        raise RpcError(
            StatusCode.INTERNAL,
            f"Unsupported request version {version!r}, expected {REQUEST_VERSION.decode()!r}",
        )
    timeout_ms = get_str(custom_metadata, TIMEOUT_MS_KEY)
    try:
        timeout = int(timeout_ms) / 1000 if timeout_ms is not None else None
    except ValueError:
        raise RpcError(StatusCode.INTERNAL, f"Malformed timeout header: {timeout_ms!r}") from None
    return CallHeaders(method=method, request_id=get_str(custom_metadata, REQUEST_ID_KEY) or "", timeout=timeout)


# ---------------------------------------------------------------------------
# Messages (both directions)
# ---------------------------------------------------------------------------


def _write_message(writer: ipc.RecordBatchStreamWriter, batch: pa.RecordBatch) -> None:
    """Write one encoded message (a single-row batch)."""
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Write message: %s", fmt_batch(batch))
    writer.write_batch(batch)


def _read_frame(reader: ipc.RecordBatchStreamReader) -> Frame:
    """Read the next frame.

    Raises:
        StopIteration: At end-of-stream (the peer half-closed).

    """
    batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    return Frame(batch, custom_metadata)


# ---------------------------------------------------------------------------
# Server -> Client
# ---------------------------------------------------------------------------


def _write_trailers(
    writer: ipc.RecordBatchStreamWriter,
    schema: pa.Schema,
    status: Status,
    *,
    server_id: str = "",
    request_id: str = "",
) -> None:
    """Write the terminal status as a zero-row trailers frame."""
    md: dict[bytes, bytes] = {
        FRAME_KIND_KEY: FRAME_KIND_TRAILERS,
        STATUS_CODE_KEY: str(int(status.code)).encode(),
        STATUS_MESSAGE_KEY: status.message.encode(),
    }
    if server_id:
        md[SERVER_ID_KEY] = server_id.encode()
    if request_id:
        md[REQUEST_ID_KEY] = request_id.encode()
    custom_metadata = pa.KeyValueMetadata(md)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write trailers: %s", fmt_metadata(custom_metadata))
    writer.write_batch(empty_batch(schema), custom_metadata=custom_metadata)


def _write_status_stream(
    sink: IOBase,
    status: Status,
    *,
    server_id: str = "",
    request_id: str = "",
) -> None:
    """Write a complete response stream holding nothing but trailers."""
    schema = pa.schema([])
    with ipc.new_stream(sink, schema) as writer:
        _write_trailers(writer, schema, status, server_id=server_id, request_id=request_id)


def _status_from_trailers(frame: Frame) -> Status:
    """Decode the terminal status carried by a trailers frame."""
    code = StatusCode.from_wire(get_str(frame.metadata, STATUS_CODE_KEY))
    message = get_str(frame.metadata, STATUS_MESSAGE_KEY) or ""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Read trailers: %s", fmt_metadata(frame.metadata))
    return Status(code, message)
