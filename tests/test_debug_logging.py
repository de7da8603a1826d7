# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for wire-protocol debug logging under ``calc_rpc.wire.*``."""

from __future__ import annotations

import logging

import pyarrow as pa
import pytest

from calc_rpc.calculator import SumRequest
from calc_rpc.metadata import RPC_METHOD_KEY
from calc_rpc.rpc import RpcClient
from calc_rpc.rpc._debug import fmt_batch, fmt_metadata, fmt_schema


class TestFormatters:
    """String helpers used inside ``isEnabledFor`` guards."""

    def test_fmt_schema(self) -> None:
        """Schemas render as a compact field list."""
        assert fmt_schema(SumRequest.ARROW_SCHEMA) == "(first_number: int32, second_number: int32)"
        assert fmt_schema(pa.schema([])) == "(empty)"

    def test_fmt_metadata(self) -> None:
        """Metadata renders as key=value pairs, truncating long values."""
        assert fmt_metadata(None) == "None"
        md = pa.KeyValueMetadata({RPC_METHOD_KEY: b"sum", b"long": b"x" * 200})
        text = fmt_metadata(md)
        assert "calc_rpc.method='sum'" in text
        assert "..." in text
        assert "x" * 81 not in text

    def test_fmt_batch(self) -> None:
        """Batches render with row and column counts."""
        text = fmt_batch(SumRequest(first_number=1, second_number=2).to_batch())
        assert text.startswith("RecordBatch(rows=1, cols=2, schema=(first_number: int32")


class TestWireLogging:
    """Frames crossing a transport are traced at DEBUG."""

    def test_call_is_traced(self, pipe_client: RpcClient, caplog: pytest.LogCaptureFixture) -> None:
        """Headers, messages, trailers, and stream lifecycle events are logged."""
        with caplog.at_level(logging.DEBUG, logger="calc_rpc.wire"):
            pipe_client.call("sum", SumRequest(first_number=1, second_number=2))
        messages = [(r.name, r.getMessage()) for r in caplog.records if r.name.startswith("calc_rpc.wire")]
        assert any(name == "calc_rpc.wire.request" and m.startswith("Write headers") for name, m in messages)
        assert any(name == "calc_rpc.wire.request" and m.startswith("Read headers") for name, m in messages)
        assert any(name == "calc_rpc.wire.response" and m.startswith("Write trailers") for name, m in messages)
        assert any(name == "calc_rpc.wire.response" and m.startswith("Read trailers") for name, m in messages)
        assert any(name == "calc_rpc.wire.stream" and m.startswith("Call open: method=sum") for name, m in messages)
        assert any(name == "calc_rpc.wire.transport" and m.startswith("make_pipe_pair") for name, m in messages)

    def test_silent_by_default(self, pipe_client: RpcClient, caplog: pytest.LogCaptureFixture) -> None:
        """Nothing is traced unless the wire loggers are enabled."""
        with caplog.at_level(logging.INFO):
            pipe_client.call("sum", SumRequest(first_number=1, second_number=2))
        assert not [r for r in caplog.records if r.name.startswith("calc_rpc.wire")]
