"""Server and client configuration, including optional TLS credentials.

Every setting has a default, may be overridden from the environment with
``from_env()``, and is otherwise passed explicitly (the CLI maps its options
onto these dataclasses).  The listening address and credentials are outside
the RPC core; they only decide which transport a call uses.

Environment variables:

==============================  ==========================================
``CALC_RPC_HOST``               server bind host
``CALC_RPC_PORT``               server port
``CALC_RPC_TARGET``             client ``host:port``
``CALC_RPC_TLS_CERT``           server certificate (PEM)
``CALC_RPC_TLS_KEY``            server private key (PEM)
``CALC_RPC_TLS_CA``             CA bundle the client trusts (PEM)
``CALC_RPC_TLS_SERVER_NAME``    name the client verifies the certificate for
``CALC_RPC_TIMEOUT``            default client call timeout in seconds
==============================  ==========================================
"""

from __future__ import annotations

import os
import ssl
from collections.abc import Mapping
from dataclasses import dataclass

__all__ = ["DEFAULT_PORT", "ClientConfig", "ConfigError", "ServerConfig", "TlsConfig", "parse_target"]

DEFAULT_PORT = 50051


class ConfigError(ValueError):
    """A configuration value is missing or malformed."""


def _env(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


def parse_target(target: str) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts.

    Raises:
        ConfigError: If the port is missing or not a number.

    """
    host, sep, port = target.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"Target must be host:port, got {target!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in target {target!r}") from None
    return host.strip("[]"), port_number


@dataclass(frozen=True)
class TlsConfig:
    """TLS credential files.

    A server needs ``cert_file`` and ``key_file``; a client needs
    ``ca_file`` (and usually ``server_name`` when the certificate's name
    differs from the host it dials).

    Attributes:
        cert_file: Server certificate chain (PEM).
        key_file: Server private key (PEM).
        ca_file: CA certificates the client trusts (PEM).
        server_name: Host name the client verifies the server certificate for.

    """

    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    server_name: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TlsConfig | None:
        """Build from ``CALC_RPC_TLS_*``; ``None`` when none of them is set."""
        env = os.environ if environ is None else environ
        config = cls(
            cert_file=_env(env, "CALC_RPC_TLS_CERT"),
            key_file=_env(env, "CALC_RPC_TLS_KEY"),
            ca_file=_env(env, "CALC_RPC_TLS_CA"),
            server_name=_env(env, "CALC_RPC_TLS_SERVER_NAME"),
        )
        return None if config == cls() else config

    def server_context(self) -> ssl.SSLContext:
        """Build the server-side context.

        Raises:
            ConfigError: If the certificate or key is not configured.

        """
        if not self.cert_file or not self.key_file:
            raise ConfigError("TLS server needs both a certificate and a key file")
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.cert_file, self.key_file)
        return context

    def client_context(self) -> ssl.SSLContext:
        """Build the client-side context, trusting ``ca_file`` (or the system store)."""
        return ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=self.ca_file)


@dataclass(frozen=True)
class ServerConfig:
    """Where and how the server listens.

    Attributes:
        host: Bind address.
        port: TCP port (``0`` picks a free one).
        tls: Credentials; plain TCP when ``None``.

    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    tls: TlsConfig | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """Build from ``CALC_RPC_HOST`` / ``CALC_RPC_PORT`` / ``CALC_RPC_TLS_*``.

        Raises:
            ConfigError: If ``CALC_RPC_PORT`` is not a number.

        """
        env = os.environ if environ is None else environ
        port = _env(env, "CALC_RPC_PORT")
        try:
            port_number = int(port) if port is not None else DEFAULT_PORT
        except ValueError:
            raise ConfigError(f"CALC_RPC_PORT must be an integer, got {port!r}") from None
        return cls(host=_env(env, "CALC_RPC_HOST") or cls.host, port=port_number, tls=TlsConfig.from_env(env))

    def ssl_context(self) -> ssl.SSLContext | None:
        """Server TLS context, or ``None`` for plain TCP."""
        return self.tls.server_context() if self.tls is not None else None


@dataclass(frozen=True)
class ClientConfig:
    """Where the client connects and how long calls may take.

    Attributes:
        target: Server address as ``host:port``.
        tls: Credentials; plain TCP when ``None``.
        timeout: Default per-call timeout in seconds; ``None`` for no deadline.

    """

    target: str = f"localhost:{DEFAULT_PORT}"
    tls: TlsConfig | None = None
    timeout: float | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build from ``CALC_RPC_TARGET`` / ``CALC_RPC_TIMEOUT`` / ``CALC_RPC_TLS_*``.

        Raises:
            ConfigError: If ``CALC_RPC_TIMEOUT`` is not a number.

        """
        env = os.environ if environ is None else environ
        timeout = _env(env, "CALC_RPC_TIMEOUT")
        try:
            timeout_seconds = float(timeout) if timeout is not None else None
        except ValueError:
            raise ConfigError(f"CALC_RPC_TIMEOUT must be a number, got {timeout!r}") from None
        return cls(
            target=_env(env, "CALC_RPC_TARGET") or cls.target,
            tls=TlsConfig.from_env(env),
            timeout=timeout_seconds,
        )

    @property
    def address(self) -> tuple[str, int]:
        """``(host, port)`` parsed from :attr:`target`."""
        return parse_target(self.target)

    def ssl_context(self) -> ssl.SSLContext | None:
        """Client TLS context, or ``None`` for plain TCP."""
        return self.tls.client_context() if self.tls is not None else None

    @property
    def server_hostname(self) -> str | None:
        """Name to verify the server certificate for, if configured."""
        return self.tls.server_name if self.tls is not None else None
