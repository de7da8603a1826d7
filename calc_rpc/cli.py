"""Command-line interface for the calculator service.

Provides ``serve`` to run the server and one client command per calculator
method.  Results are printed as JSON lines on stdout; a failed call prints
its status as JSON on stderr and exits with code 1.

Usage::

    calc-rpc serve --port 50051
    calc-rpc sum 3 10
    calc-rpc primes 120
    calc-rpc average 2 5 7 9 12 57
    calc-rpc maximum 2 8 1 5 37 28 42 --interval 0.5
    calc-rpc --timeout 5 sum-with-deadline 1 2
    calc-rpc --target api.example.com:50051 --ca-cert ca.crt sqrt 16

"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass, field
from typing import Annotated

import typer

from calc_rpc.calculator import (
    CalculatorService,
    CalculatorServiceImpl,
    ComputeAverageRequest,
    FindMaximumRequest,
    PrimeNumberDecompositionRequest,
    SquareRootRequest,
    SumRequest,
    SumWithDeadlineRequest,
)
from calc_rpc.codec import ArrowMessage
from calc_rpc.config import ClientConfig, ConfigError, ServerConfig, TlsConfig
from calc_rpc.logging_utils import configure_logging
from calc_rpc.rpc import BidiCoordinator, RpcClient, RpcError, RpcListener, RpcServer, SocketConnector

# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved client options."""

    client: ClientConfig = field(default_factory=ClientConfig)
    pretty: bool = False


app = typer.Typer(
    name="calc-rpc",
    help="Calculator RPC server and client.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    target: Annotated[str | None, typer.Option("--target", "-t", help="Server address as host:port")] = None,
    ca_cert: Annotated[str | None, typer.Option("--ca-cert", help="CA certificate (PEM); enables TLS")] = None,
    server_name: Annotated[
        str | None, typer.Option("--server-name", help="Name to verify the server certificate for")
    ] = None,
    timeout: Annotated[float | None, typer.Option("--timeout", help="Per-call deadline in seconds")] = None,
    pretty: Annotated[bool, typer.Option("--pretty", help="Indent JSON output")] = False,
) -> None:
    """Configure the connection used by the client commands."""
    try:
        base = ClientConfig.from_env()
    except ConfigError as e:
        raise typer.BadParameter(str(e)) from None
    tls = base.tls
    if ca_cert is not None or server_name is not None:
        tls = TlsConfig(
            ca_file=ca_cert or (tls.ca_file if tls else None),
            server_name=server_name or (tls.server_name if tls else None),
        )
    ctx.obj = _CliConfig(
        client=ClientConfig(
            target=target or base.target,
            tls=tls,
            timeout=timeout if timeout is not None else base.timeout,
        ),
        pretty=pretty,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_json(data: object, *, pretty: bool = False) -> None:
    """Print JSON to stdout."""
    if pretty:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(json.dumps(data, default=str))


def _emit_rpc_error(e: RpcError) -> None:
    """Write an RpcError to stderr as JSON."""
    err: dict[str, object] = {"code": e.code.name, "message": e.message}
    if e.request_id:
        err["request_id"] = e.request_id
    typer.echo(json.dumps({"error": err}, default=str), err=True)


def _make_client(config: _CliConfig) -> RpcClient:
    client = config.client
    try:
        host, port = client.address
        ssl_context = client.ssl_context()
    except (ConfigError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    connector = SocketConnector(host, port, ssl_context=ssl_context, server_hostname=client.server_hostname)
    return RpcClient(CalculatorService, connector, default_timeout=client.timeout)


def _run(ctx: typer.Context, call: Callable[[RpcClient], Iterator[ArrowMessage]]) -> None:
    """Run *call* against the configured server, printing each message it yields."""
    config: _CliConfig = ctx.obj
    with _make_client(config) as client:
        try:
            for message in call(client):
                _print_json(asdict(message), pretty=config.pretty)  # type: ignore[call-overload]
        except RpcError as e:
            _emit_rpc_error(e)
            raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: Annotated[str | None, typer.Option("--host", help="Bind address")] = None,
    port: Annotated[int | None, typer.Option("--port", help="TCP port")] = None,
    cert: Annotated[str | None, typer.Option("--cert", help="Server certificate (PEM)")] = None,
    key: Annotated[str | None, typer.Option("--key", help="Server private key (PEM)")] = None,
    steps: Annotated[int, typer.Option("--steps", help="Work units of sum_with_deadline")] = 3,
    step_seconds: Annotated[float, typer.Option("--step-seconds", help="Seconds per work unit")] = 1.0,
    log_level: Annotated[str, typer.Option("--log-level", help="Logging level")] = "INFO",
    json_logs: Annotated[bool, typer.Option("--json-logs", help="Emit JSON log records")] = False,
) -> None:
    """Run the calculator server until interrupted."""
    configure_logging(log_level, json=json_logs)
    try:
        base = ServerConfig.from_env()
        tls = base.tls
        if cert is not None or key is not None:
            tls = TlsConfig(cert_file=cert, key_file=key)
        config = ServerConfig(
            host=host or base.host,
            port=port if port is not None else base.port,
            tls=tls,
        )
        ssl_context = config.ssl_context()
    except (ConfigError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    server = RpcServer(CalculatorService, CalculatorServiceImpl(steps=steps, step_seconds=step_seconds))
    listener = RpcListener(server, config.host, config.port, ssl_context=ssl_context)
    try:
        listener.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        listener.shutdown()


# ---------------------------------------------------------------------------
# Client commands
# ---------------------------------------------------------------------------


@app.command("sum")
def sum_(
    ctx: typer.Context,
    first_number: Annotated[int, typer.Argument(help="First operand")],
    second_number: Annotated[int, typer.Argument(help="Second operand")],
) -> None:
    """Add two numbers (unary)."""
    request = SumRequest(first_number=first_number, second_number=second_number)
    _run(ctx, lambda client: iter([client.call("sum", request)]))


@app.command()
def primes(
    ctx: typer.Context,
    number: Annotated[int, typer.Argument(help="Number to decompose")],
) -> None:
    """Stream the prime factors of a number (server streaming)."""
    request = PrimeNumberDecompositionRequest(number=number)
    _run(ctx, lambda client: iter(client.open_server_stream("prime_number_decomposition", request)))


@app.command()
def average(
    ctx: typer.Context,
    numbers: Annotated[list[int] | None, typer.Argument(help="Numbers to average")] = None,
) -> None:
    """Average a stream of numbers (client streaming)."""

    def call(client: RpcClient) -> Iterator[ArrowMessage]:
        with client.open_client_stream("compute_average") as writer:
            for number in numbers or []:
                writer.send(ComputeAverageRequest(number=number))
            yield writer.close_and_receive()

    _run(ctx, call)


@app.command()
def maximum(
    ctx: typer.Context,
    numbers: Annotated[list[int], typer.Argument(help="Numbers to send")],
    interval: Annotated[float, typer.Option("--interval", help="Seconds between sends")] = 0.0,
) -> None:
    """Print each new running maximum (bidirectional streaming)."""
    config: _CliConfig = ctx.obj

    def call(client: RpcClient) -> Iterator[ArrowMessage]:
        stream = client.open_bidi_stream("find_maximum")
        BidiCoordinator(stream).run(
            [FindMaximumRequest(number=n) for n in numbers],
            lambda response: _print_json(asdict(response), pretty=config.pretty),  # type: ignore[call-overload]
            send_interval=interval,
        )
        return iter(())

    _run(ctx, call)


@app.command()
def sqrt(
    ctx: typer.Context,
    number: Annotated[int, typer.Argument(help="Non-negative number")],
) -> None:
    """Square root of a number (unary, validated)."""
    request = SquareRootRequest(number=number)
    _run(ctx, lambda client: iter([client.call("square_root", request)]))


@app.command("sum-with-deadline")
def sum_with_deadline(
    ctx: typer.Context,
    first_number: Annotated[int, typer.Argument(help="First operand")],
    second_number: Annotated[int, typer.Argument(help="Second operand")],
) -> None:
    """Add two numbers slowly (unary, honours --timeout)."""
    request = SumWithDeadlineRequest(first_number=first_number, second_number=second_number)
    _run(ctx, lambda client: iter([client.call("sum_with_deadline", request)]))
