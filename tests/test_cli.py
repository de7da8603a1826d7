# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the calc-rpc CLI tool."""

from __future__ import annotations

import json
import socket
from typing import Any

import pytest
from typer.testing import CliRunner

from calc_rpc import cli
from calc_rpc.cli import app
from calc_rpc.rpc import RpcListener

runner = CliRunner()


def _target(listener: RpcListener) -> str:
    host, port = listener.address
    return f"{host}:{port}"


def _json_lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


@pytest.fixture(autouse=True)
def _no_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's CALC_RPC_* variables out of the tests."""
    for name in ("TARGET", "TIMEOUT", "TLS_CA", "TLS_CERT", "TLS_KEY", "TLS_SERVER_NAME", "HOST", "PORT"):
        monkeypatch.delenv(f"CALC_RPC_{name}", raising=False)


class TestClientCommands:
    """One command per calculator method."""

    def test_sum(self, tcp_listener: RpcListener) -> None:
        """``sum`` prints the response as JSON."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "sum", "3", "10"])
        assert result.exit_code == 0, result.output
        assert _json_lines(result.output) == [{"sum_result": 13}]

    def test_pretty(self, tcp_listener: RpcListener) -> None:
        """``--pretty`` indents the JSON output."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "--pretty", "sum", "1", "1"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"sum_result": 2}
        assert "\n  " in result.output

    def test_primes(self, tcp_listener: RpcListener) -> None:
        """``primes`` prints one line per factor."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "primes", "120"])
        assert result.exit_code == 0, result.output
        assert [line["prime_factor"] for line in _json_lines(result.output)] == [2, 2, 2, 3, 5]

    def test_average(self, tcp_listener: RpcListener) -> None:
        """``average`` streams its arguments and prints the mean."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "average", "1", "2", "3", "4"])
        assert result.exit_code == 0, result.output
        assert _json_lines(result.output) == [{"average": 2.5}]

    def test_average_of_nothing(self, tcp_listener: RpcListener) -> None:
        """``average`` without numbers reports INVALID_ARGUMENT and exits 1."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "average"])
        assert result.exit_code == 1
        assert "INVALID_ARGUMENT" in result.output

    def test_maximum(self, tcp_listener: RpcListener) -> None:
        """``maximum`` prints each new running maximum."""
        numbers = ["2", "8", "1", "5", "37", "28", "42"]
        result = runner.invoke(app, ["--target", _target(tcp_listener), "maximum", *numbers, "--interval", "0.01"])
        assert result.exit_code == 0, result.output
        assert [line["maximum"] for line in _json_lines(result.output)] == [2, 8, 37, 42]

    def test_sqrt(self, tcp_listener: RpcListener) -> None:
        """``sqrt`` prints the root."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "sqrt", "16"])
        assert result.exit_code == 0, result.output
        assert _json_lines(result.output) == [{"number_root": 4.0}]

    def test_sqrt_negative(self, tcp_listener: RpcListener) -> None:
        """A server-side precondition failure is printed as a JSON error."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "sqrt", "--", "-4"])
        assert result.exit_code == 1
        errors = [line["error"] for line in _json_lines(result.output) if "error" in line]
        assert errors[0]["code"] == "INVALID_ARGUMENT"
        assert errors[0]["message"] == "Received a negative number: -4"
        assert errors[0]["request_id"]

    def test_sum_out_of_range(self, tcp_listener: RpcListener) -> None:
        """An operand outside int32 is reported as a JSON INVALID_ARGUMENT error."""
        result = runner.invoke(app, ["--target", _target(tcp_listener), "sum", "3000000000", "1"])
        assert result.exit_code == 1
        errors = [line["error"] for line in _json_lines(result.output) if "error" in line]
        assert errors[0]["code"] == "INVALID_ARGUMENT"

    def test_sum_with_deadline(self, tcp_listener: RpcListener) -> None:
        """The slow sum succeeds within a generous timeout."""
        result = runner.invoke(
            app, ["--target", _target(tcp_listener), "--timeout", "5", "sum-with-deadline", "1", "2"]
        )
        assert result.exit_code == 0, result.output
        assert _json_lines(result.output) == [{"sum_result": 3}]

    def test_sum_with_deadline_expired(self, tcp_listener: RpcListener) -> None:
        """A short ``--timeout`` ends the slow sum with DEADLINE_EXCEEDED."""
        result = runner.invoke(
            app, ["--target", _target(tcp_listener), "--timeout", "0.1", "sum-with-deadline", "1", "2"]
        )
        assert result.exit_code == 1
        assert "DEADLINE_EXCEEDED" in result.output

    def test_target_from_environment(self, tcp_listener: RpcListener, monkeypatch: pytest.MonkeyPatch) -> None:
        """``CALC_RPC_TARGET`` is used when ``--target`` is absent."""
        monkeypatch.setenv("CALC_RPC_TARGET", _target(tcp_listener))
        result = runner.invoke(app, ["sum", "2", "2"])
        assert result.exit_code == 0, result.output
        assert _json_lines(result.output) == [{"sum_result": 4}]


class TestCliErrors:
    """Failures before or outside the call."""

    def test_unreachable_server(self) -> None:
        """A closed port reports UNAVAILABLE."""
        with socket.socket() as probe:
            probe.bind(("127.0.0.1", 0))
            port = probe.getsockname()[1]
        result = runner.invoke(app, ["--target", f"127.0.0.1:{port}", "sum", "1", "2"])
        assert result.exit_code == 1
        assert "UNAVAILABLE" in result.output

    def test_malformed_target(self) -> None:
        """A target without a port is rejected before dialing."""
        result = runner.invoke(app, ["--target", "localhost", "sum", "1", "2"])
        assert result.exit_code == 1
        assert "host:port" in result.output

    def test_serve_rejects_incomplete_tls(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """``serve`` with a certificate but no key exits with an error."""
        monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
        result = runner.invoke(app, ["serve", "--port", "0", "--cert", "server.crt"])
        assert result.exit_code == 1
        assert "certificate and a key" in result.output

    def test_help_lists_commands(self) -> None:
        """The help text lists every client command."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "sum", "primes", "average", "maximum", "sqrt", "sum-with-deadline"):
            assert command in result.output
