"""Transport protocol and implementations.

A transport is the byte-stream pair carrying exactly one call.  Connectors
open a fresh transport per call, so concurrent calls never share a stream
and the transport layer stays free of multiplexing.
"""

from __future__ import annotations

import contextlib
import logging
import os
import socket
import ssl
import threading
from io import IOBase
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from calc_rpc.rpc._common import _logger
from calc_rpc.rpc._debug import wire_transport_logger

if TYPE_CHECKING:
    from calc_rpc.rpc._server import RpcServer


# ---------------------------------------------------------------------------
# RpcTransport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RpcTransport(Protocol):
    """Bidirectional byte stream carrying one call."""

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        ...

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        ...

    @property
    def peer(self) -> str:
        """Description of the remote end, for logs."""
        ...

    def close_write(self) -> None:
        """Release the write side once everything has been written."""
        ...

    def abort(self) -> None:
        """Tear the connection down so the peer observes a disconnect (cancellation)."""
        ...

    def close(self) -> None:
        """Close the transport."""
        ...


@runtime_checkable
class Connector(Protocol):
    """Client-side factory opening one transport per call."""

    def connect(self) -> RpcTransport:
        """Open a new transport to the server."""
        ...


# ---------------------------------------------------------------------------
# PipeTransport + make_pipe_pair
# ---------------------------------------------------------------------------


class PipeTransport:
    """Transport backed by file-like IO streams (e.g. from os.pipe())."""

    __slots__ = ("_peer", "_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase, peer: str = "pipe") -> None:
        """Initialize with reader and writer streams."""
        self._reader = reader
        self._writer = writer
        self._peer = peer

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    @property
    def peer(self) -> str:
        """Description of the remote end."""
        return self._peer

    def close_write(self) -> None:
        """Close the write end; the peer reads EOF."""
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()

    def abort(self) -> None:
        """Close the write end.

        The reader is left to its owning thread: closing a buffered reader
        while another thread is blocked in ``read()`` would wait on the
        reader's internal lock.
        """
        self.close_write()

    def close(self) -> None:
        """Close both streams."""
        self.close_write()
        with contextlib.suppress(OSError, ValueError):
            self._reader.close()


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Create connected client/server transports using os.pipe().

    Returns (client_transport, server_transport).
    """
    c2s_r, c2s_w = os.pipe()
    s2c_r, s2c_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "make_pipe_pair: c2s=(%d,%d), s2c=(%d,%d)",
            c2s_r,
            c2s_w,
            s2c_r,
            s2c_w,
        )
    client = PipeTransport(
        os.fdopen(s2c_r, "rb"),
        os.fdopen(c2s_w, "wb", buffering=0),
        peer="pipe-server",
    )
    server = PipeTransport(
        os.fdopen(c2s_r, "rb"),
        os.fdopen(s2c_w, "wb", buffering=0),
        peer="pipe-client",
    )
    return client, server


class PipeConnector:
    """In-process connector: every call gets a pipe pair served on its own thread."""

    __slots__ = ("_server",)

    def __init__(self, server: RpcServer) -> None:
        """Initialize with the server that will handle each call."""
        self._server = server

    def connect(self) -> PipeTransport:
        """Create a pipe pair and start serving its server side."""
        client, server_side = make_pipe_pair()
        thread = threading.Thread(
            target=self._server.serve_call,
            args=(server_side,),
            name="calc-rpc-pipe-call",
            daemon=True,
        )
        thread.start()
        return client


# ---------------------------------------------------------------------------
# SocketTransport (TCP, optionally TLS)
# ---------------------------------------------------------------------------


class SocketTransport:
    """Transport over a connected stream socket (plain TCP or TLS-wrapped)."""

    __slots__ = ("_closed", "_peer", "_reader", "_sock", "_writer")

    def __init__(self, sock: socket.socket) -> None:
        """Wrap a connected socket.

        The reader is buffered so ``read(n)`` returns exactly *n* bytes
        (Arrow IPC requires this); the writer is unbuffered so frames are
        flushed immediately.
        """
        self._sock = sock
        self._reader: IOBase = sock.makefile("rb")  # type: ignore[assignment]
        self._writer: IOBase = sock.makefile("wb", buffering=0)  # type: ignore[assignment]
        self._closed = False
        try:
            host, port = sock.getpeername()[:2]
            self._peer = f"{host}:{port}"
        except (OSError, ValueError):
            self._peer = "unknown"
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "SocketTransport open: peer=%s, tls=%s", self._peer, isinstance(sock, ssl.SSLSocket)
            )

    @property
    def reader(self) -> IOBase:
        """Readable binary stream (buffered)."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream (unbuffered)."""
        return self._writer

    @property
    def peer(self) -> str:
        """``host:port`` of the remote end."""
        return self._peer

    def close_write(self) -> None:
        """Close the writer file object; the socket itself stays open until :meth:`close`."""
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()

    def abort(self) -> None:
        """Shut the socket down in both directions, waking any blocked reader."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SocketTransport abort: peer=%s", self._peer)
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)

    def close(self) -> None:
        """Close the file objects and the socket."""
        if self._closed:
            return
        self._closed = True
        self.close_write()
        with contextlib.suppress(OSError, ValueError):
            self._reader.close()
        with contextlib.suppress(OSError):
            self._sock.close()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SocketTransport closed: peer=%s", self._peer)


class SocketConnector:
    """Client-side connector opening one TCP (optionally TLS) connection per call."""

    __slots__ = ("_connect_timeout", "_host", "_port", "_server_hostname", "_ssl_context")

    def __init__(
        self,
        host: str,
        port: int,
        *,
        ssl_context: ssl.SSLContext | None = None,
        server_hostname: str | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        """Initialize with the server address and optional TLS settings.

        Args:
            host: Server host name or address.
            port: Server port.
            ssl_context: Client TLS context; plain TCP when ``None``.
            server_hostname: Name to verify the server certificate against
                (defaults to *host*).
            connect_timeout: Seconds allowed for the TCP connect and TLS handshake.

        """
        self._host = host
        self._port = port
        self._ssl_context = ssl_context
        self._server_hostname = server_hostname
        self._connect_timeout = connect_timeout

    def connect(self) -> SocketTransport:
        """Open a connection.

        Raises:
            OSError: If the server is unreachable or the TLS handshake fails.

        """
        sock = socket.create_connection((self._host, self._port), timeout=self._connect_timeout)
        try:
            if self._ssl_context is not None:
                sock = self._ssl_context.wrap_socket(sock, server_hostname=self._server_hostname or self._host)
            sock.settimeout(None)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except BaseException:
            sock.close()
            raise
        return SocketTransport(sock)


class RpcListener:
    """TCP accept loop handing each connection (one call) to its own thread."""

    __slots__ = ("_accept_thread", "_server", "_sock", "_ssl_context", "_stopped")

    def __init__(
        self,
        server: RpcServer,
        host: str = "0.0.0.0",
        port: int = 50051,
        *,
        ssl_context: ssl.SSLContext | None = None,
        backlog: int = 128,
    ) -> None:
        """Bind and listen.  Pass ``port=0`` to pick a free port (see :attr:`address`)."""
        self._server = server
        self._ssl_context = ssl_context
        self._sock = socket.create_server((host, port), backlog=backlog, reuse_port=False)
        self._stopped = threading.Event()
        self._accept_thread: threading.Thread | None = None
        _logger.info(
            "Listening on %s:%d (tls=%s)",
            *self.address,
            ssl_context is not None,
            extra={"server_id": server.server_id},
        )

    @property
    def address(self) -> tuple[str, int]:
        """The bound ``(host, port)``."""
        host, port = self._sock.getsockname()[:2]
        return host, port

    def serve_forever(self) -> None:
        """Accept connections until :meth:`shutdown` is called."""
        while not self._stopped.is_set():
            try:
                conn, _addr = self._sock.accept()
            except OSError:
                if self._stopped.is_set():
                    break
                raise
            threading.Thread(target=self._handle, args=(conn,), name="calc-rpc-call", daemon=True).start()

    def start(self) -> RpcListener:
        """Run :meth:`serve_forever` on a background thread."""
        self._accept_thread = threading.Thread(target=self.serve_forever, name="calc-rpc-accept", daemon=True)
        self._accept_thread.start()
        return self

    def shutdown(self) -> None:
        """Stop accepting connections; in-flight calls finish on their own threads."""
        self._stopped.set()
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        self._sock.close()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=5)

    def __enter__(self) -> RpcListener:
        """Start serving in the background."""
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        """Stop serving."""
        self.shutdown()

    def _handle(self, conn: socket.socket) -> None:
        try:
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if self._ssl_context is not None:
                conn = self._ssl_context.wrap_socket(conn, server_side=True)
        except (OSError, ssl.SSLError):
            _logger.warning("Connection setup failed", exc_info=True, extra={"server_id": self._server.server_id})
            conn.close()
            return
        self._server.serve_call(SocketTransport(conn))
