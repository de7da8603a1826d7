"""Shared helpers for ``pa.KeyValueMetadata`` used by the call framing.

Centralises the well-known metadata keys carried on header and trailer
batches (including the wire-protocol version constant ``REQUEST_VERSION``)
together with encoding and decoding, so that the client and server halves of
``calc_rpc.rpc`` share a single implementation.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "FRAME_KIND_HEADERS",
    "FRAME_KIND_KEY",
    "FRAME_KIND_TRAILERS",
    "REQUEST_ID_KEY",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "RPC_METHOD_KEY",
    "SERVER_ID_KEY",
    "STATUS_CODE_KEY",
    "STATUS_MESSAGE_KEY",
    "TIMEOUT_MS_KEY",
    "decode_metadata",
    "encode_metadata",
    "get_str",
]

# ---------------------------------------------------------------------------
# Well-known metadata keys (bytes, matching what appears on the wire)
# ---------------------------------------------------------------------------

FRAME_KIND_KEY = b"calc_rpc.frame"
FRAME_KIND_HEADERS = b"headers"
FRAME_KIND_TRAILERS = b"trailers"

RPC_METHOD_KEY = b"calc_rpc.method"
REQUEST_VERSION_KEY = b"calc_rpc.request_version"
REQUEST_VERSION = b"1"
REQUEST_ID_KEY = b"calc_rpc.request_id"

# Remaining time budget in milliseconds, relative to when the headers were sent
TIMEOUT_MS_KEY = b"calc_rpc.timeout_ms"

STATUS_CODE_KEY = b"calc_rpc.status_code"
STATUS_MESSAGE_KEY = b"calc_rpc.status_message"
SERVER_ID_KEY = b"calc_rpc.server_id"

# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode_metadata(metadata: dict[str, str]) -> pa.KeyValueMetadata:
    """Encode a plain ``dict[str, str]`` to ``pa.KeyValueMetadata`` with bytes keys/values."""
    return pa.KeyValueMetadata({k.encode(): v.encode() for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Decode ``pa.KeyValueMetadata`` into a plain ``dict[str, str]`` (empty when ``None``)."""
    if metadata is None:
        return {}
    result: dict[str, str] = {}
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        result[key] = val
    return result


def get_str(metadata: pa.KeyValueMetadata | None, key: bytes) -> str | None:
    """Return the value stored under *key* as a string, or ``None`` if absent."""
    if metadata is None:
        return None
    raw = metadata.get(key)
    if raw is None:
        return None
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
