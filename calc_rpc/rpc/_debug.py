"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``calc_rpc.wire.*`` hierarchy and
formatting helpers for Arrow IPC objects.  Enabling
``logging.getLogger("calc_rpc.wire").setLevel(logging.DEBUG)`` shows every
header, message, and trailer that crosses a transport.

All formatting helpers return ``str`` and never log directly.  Call them
inside ``isEnabledFor`` guards so there is no overhead when debug logging is
disabled.
"""

from __future__ import annotations

import logging

import pyarrow as pa

# ---------------------------------------------------------------------------
# Logger hierarchy: calc_rpc.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("calc_rpc.wire.request")
"""Call headers and request messages."""

wire_response_logger = logging.getLogger("calc_rpc.wire.response")
"""Response messages and trailers."""

wire_stream_logger = logging.getLogger("calc_rpc.wire.stream")
"""Stream lifecycle (half-close, cancel, terminal status)."""

wire_transport_logger = logging.getLogger("calc_rpc.wire.transport")
"""Transport lifecycle (pipe, socket)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum length for individual values in fmt_metadata."""


def fmt_schema(schema: pa.Schema) -> str:
    """Format an Arrow schema compactly.

    Returns:
        ``"(first_number: int32, second_number: int32)"`` or ``"(empty)"``.

    """
    if len(schema) == 0:
        return "(empty)"
    fields = ", ".join(f"{f.name}: {f.type}" for f in schema)
    return f"({fields})"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Format Arrow custom metadata compactly.

    Returns:
        ``"{calc_rpc.method='sum', calc_rpc.request_version='1'}"`` or
        ``"None"`` when metadata is absent.

    """
    if metadata is None:
        return "None"
    parts: list[str] = []
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        if len(val) > _MAX_VALUE_LEN:
            val = val[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{key}={val!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch) -> str:
    """Format a RecordBatch summary.

    Returns:
        ``"RecordBatch(rows=1, cols=2, schema=(a: int32, b: int32), bytes=8)"``

    """
    return (
        f"RecordBatch(rows={batch.num_rows}, cols={batch.num_columns}, "
        f"schema={fmt_schema(batch.schema)}, bytes={batch.nbytes})"
    )
