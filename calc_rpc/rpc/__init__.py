# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Threaded RPC framework with unary and streaming calls over Arrow IPC.

Defines RPC interfaces as Python Protocol classes whose annotations decide
the interaction pattern of each method, and provides explicit call handles
plus typed client proxies.

Method Types (derived from the request and return annotations)
--------------------------------------------------------------
- **Unary**: ``def m(self, request: Req) -> Resp``
- **Server stream**: ``def m(self, request: Req) -> Iterator[Resp]``
- **Client stream**: ``def m(self, requests: Iterator[Req]) -> Resp``
- **Bidi stream**: ``def m(self, requests: Iterator[Req]) -> Iterator[Resp]``

Wire Protocol
-------------
Every call gets its own transport (a pipe pair or a TCP connection) and
writes one IPC stream in each direction::

    Client->Server: [request_schema + headers + message* + EOS]
    Server->Client: [response_schema + message* + trailers + EOS]

The headers (a zero-row batch) name the method, the protocol version, the
request id, and the remaining time budget.  The trailers (a zero-row batch)
carry the terminal status.  The request stream's EOS is the client's
half-close; a client that drops the connection before the server has
finished cancels the call.

Deadlines and Cancellation
--------------------------
Each side runs a :class:`CallSupervisor` for the call.  On the client,
expiry or :meth:`cancel` is preemptive: pending receives fail at once and
buffered responses are discarded.  On the server, handlers that declare a
``ctx`` parameter poll ``ctx.is_active()`` and stop early; whatever they
return after the call expired or was cancelled is replaced by the
supervisor's status.

Errors
------
Every non-OK status reaches the caller as :class:`RpcError`.  Handlers
raise ``RpcError`` (or call ``ctx.abort()``) to return a specific code;
any other exception becomes ``INTERNAL``.  Transport failures are
``UNAVAILABLE``.  Nothing is retried.
"""

from __future__ import annotations

import contextlib
import ssl
from collections.abc import Iterator
from typing import TypeVar

from calc_rpc.rpc._channel import MessageChannel
from calc_rpc.rpc._client import (
    BidiCoordinator,
    BidiStream,
    ClientCall,
    ClientStreamWriter,
    ReceiveState,
    RpcClient,
    RpcConnection,
    SendState,
    ServerStreamReader,
    UnaryCall,
    _RpcProxy,
)
from calc_rpc.rpc._common import (
    OK_STATUS,
    CallStatistics,
    EndOfStream,
    InvalidStateError,
    MethodType,
    RpcError,
    Status,
    StatusCode,
)
from calc_rpc.rpc._deadline import CallState, CallSupervisor
from calc_rpc.rpc._server import RequestStream, RpcServer, ServerContext, _emit_access_log, _log_method_error
from calc_rpc.rpc._transport import (
    Connector,
    PipeConnector,
    PipeTransport,
    RpcListener,
    RpcTransport,
    SocketConnector,
    SocketTransport,
    make_pipe_pair,
)
from calc_rpc.rpc._types import RpcMethodInfo, rpc_methods

P = TypeVar("P")

__all__ = [
    "OK_STATUS",
    "BidiCoordinator",
    "BidiStream",
    "CallState",
    "CallStatistics",
    "CallSupervisor",
    "ClientCall",
    "ClientStreamWriter",
    "Connector",
    "EndOfStream",
    "InvalidStateError",
    "MessageChannel",
    "MethodType",
    "PipeConnector",
    "PipeTransport",
    "ReceiveState",
    "RequestStream",
    "RpcClient",
    "RpcConnection",
    "RpcError",
    "RpcListener",
    "RpcMethodInfo",
    "RpcServer",
    "RpcTransport",
    "SendState",
    "ServerContext",
    "ServerStreamReader",
    "SocketConnector",
    "SocketTransport",
    "Status",
    "StatusCode",
    "UnaryCall",
    "_RpcProxy",
    "_emit_access_log",
    "_log_method_error",
    "connect",
    "make_pipe_pair",
    "rpc_methods",
    "serve_pipe",
    "serve_tcp",
]


@contextlib.contextmanager
def serve_pipe(
    protocol: type[P],
    implementation: object,
    *,
    server_id: str | None = None,
    default_timeout: float | None = None,
) -> Iterator[P]:
    """Serve *implementation* in-process and yield a typed client proxy.

    Useful for tests and demos.  Each call gets a fresh pipe pair whose
    server side runs ``RpcServer.serve_call()`` on a background thread.

    Args:
        protocol: The Protocol class defining the RPC interface.
        implementation: The implementation object.
        server_id: Optional server identifier.
        default_timeout: Timeout applied to calls that do not pass one.

    Yields:
        A typed RPC proxy supporting all methods defined on *protocol*.

    """
    server = RpcServer(protocol, implementation, server_id=server_id)
    with RpcConnection(protocol, PipeConnector(server), default_timeout=default_timeout) as proxy:
        yield proxy


def serve_tcp(
    protocol: type,
    implementation: object,
    host: str = "0.0.0.0",
    port: int = 50051,
    *,
    ssl_context: ssl.SSLContext | None = None,
    server_id: str | None = None,
) -> RpcListener:
    """Bind a TCP listener for *implementation* (not yet accepting; call ``start()`` or ``serve_forever()``)."""
    server = RpcServer(protocol, implementation, server_id=server_id)
    return RpcListener(server, host, port, ssl_context=ssl_context)


@contextlib.contextmanager
def connect(
    protocol: type[P],
    host: str,
    port: int,
    *,
    ssl_context: ssl.SSLContext | None = None,
    server_hostname: str | None = None,
    default_timeout: float | None = None,
) -> Iterator[P]:
    """Yield a typed proxy whose calls each open a TCP (optionally TLS) connection.

    Args:
        protocol: The Protocol class defining the RPC interface.
        host: Server host.
        port: Server port.
        ssl_context: Client TLS context; plain TCP when ``None``.
        server_hostname: Name to verify the server certificate against.
        default_timeout: Timeout applied to calls that do not pass one.

    Yields:
        A typed RPC proxy supporting all methods defined on *protocol*.

    """
    connector = SocketConnector(host, port, ssl_context=ssl_context, server_hostname=server_hostname)
    with RpcConnection(protocol, connector, default_timeout=default_timeout) as proxy:
        yield proxy
