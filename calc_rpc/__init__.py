# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Unary and streaming RPC over Arrow IPC, with a calculator service on top."""

import logging

from calc_rpc.codec import ArrowMessage, ArrowType, CodecError, Float64, Int32, Int64
from calc_rpc.config import ClientConfig, ConfigError, ServerConfig, TlsConfig
from calc_rpc.metadata import REQUEST_VERSION
from calc_rpc.rpc import (
    BidiCoordinator,
    BidiStream,
    CallState,
    CallStatistics,
    CallSupervisor,
    ClientCall,
    ClientStreamWriter,
    Connector,
    EndOfStream,
    InvalidStateError,
    MessageChannel,
    MethodType,
    PipeConnector,
    PipeTransport,
    RequestStream,
    RpcClient,
    RpcConnection,
    RpcError,
    RpcListener,
    RpcMethodInfo,
    RpcServer,
    RpcTransport,
    ServerContext,
    ServerStreamReader,
    SocketConnector,
    SocketTransport,
    Status,
    StatusCode,
    UnaryCall,
    connect,
    make_pipe_pair,
    rpc_methods,
    serve_pipe,
    serve_tcp,
)

__all__ = [
    # Core
    "RpcServer",
    "RpcClient",
    "RpcConnection",
    "RpcTransport",
    "RpcError",
    "RpcMethodInfo",
    "MethodType",
    "Status",
    "StatusCode",
    "InvalidStateError",
    "EndOfStream",
    # Calls and streams
    "ClientCall",
    "UnaryCall",
    "ServerStreamReader",
    "ClientStreamWriter",
    "BidiStream",
    "BidiCoordinator",
    "MessageChannel",
    "CallSupervisor",
    "CallState",
    # Server side
    "ServerContext",
    "RequestStream",
    "CallStatistics",
    # Convenience
    "serve_pipe",
    "serve_tcp",
    "connect",
    "rpc_methods",
    # Transports
    "Connector",
    "PipeConnector",
    "PipeTransport",
    "SocketConnector",
    "SocketTransport",
    "RpcListener",
    "make_pipe_pair",
    # Serialization
    "ArrowMessage",
    "ArrowType",
    "CodecError",
    "Float64",
    "Int32",
    "Int64",
    # Configuration
    "ClientConfig",
    "ConfigError",
    "ServerConfig",
    "TlsConfig",
    # Protocol version
    "REQUEST_VERSION",
]

# Attach NullHandler to the library's root logger so users don't get
# "No handler found" warnings.
logging.getLogger("calc_rpc").addHandler(logging.NullHandler())
