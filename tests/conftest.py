"""Shared test fixtures for calc-rpc tests."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from calc_rpc.calculator import CalculatorService, CalculatorServiceImpl
from calc_rpc.rpc import PipeConnector, RpcClient, RpcConnection, RpcListener, RpcServer, SocketConnector

STEP_SECONDS = 0.2
"""Duration of one ``sum_with_deadline`` work unit in tests (three units per call)."""

ConnFactory = Callable[..., contextlib.AbstractContextManager[Any]]
"""Type alias for the ``make_conn`` fixture return type."""


@pytest.fixture
def calc_server() -> RpcServer:
    """Calculator server with a short ``sum_with_deadline``."""
    return RpcServer(CalculatorService, CalculatorServiceImpl(steps=3, step_seconds=STEP_SECONDS), server_id="test")


@pytest.fixture
def tcp_listener(calc_server: RpcServer) -> Iterator[RpcListener]:
    """Serve the calculator on a free loopback port for one test."""
    listener = RpcListener(calc_server, "127.0.0.1", 0)
    listener.start()
    yield listener
    listener.shutdown()


@pytest.fixture
def pipe_client(calc_server: RpcServer) -> Iterator[RpcClient]:
    """Explicit-handle client over in-process pipes."""
    with RpcClient(CalculatorService, PipeConnector(calc_server)) as client:
        yield client


@pytest.fixture
def tcp_client(tcp_listener: RpcListener) -> Iterator[RpcClient]:
    """Explicit-handle client over loopback TCP."""
    host, port = tcp_listener.address
    with RpcClient(CalculatorService, SocketConnector(host, port)) as client:
        yield client


@pytest.fixture(params=["pipe", "tcp"])
def make_conn(request: pytest.FixtureRequest, calc_server: RpcServer) -> Iterator[ConnFactory]:
    """Return a factory that opens a typed calculator proxy over each transport."""
    listeners: list[RpcListener] = []

    @contextlib.contextmanager
    def factory(*, default_timeout: float | None = None) -> Iterator[Any]:
        if request.param == "pipe":
            connector: Any = PipeConnector(calc_server)
        else:
            listener = RpcListener(calc_server, "127.0.0.1", 0).start()
            listeners.append(listener)
            connector = SocketConnector(*listener.address)
        with RpcConnection(CalculatorService, connector, default_timeout=default_timeout) as proxy:
            yield proxy

    yield factory
    for listener in listeners:
        listener.shutdown()


@pytest.fixture
def clean_calc_logger() -> Iterator[logging.Logger]:
    """Restore the ``calc_rpc`` logger's handlers and level after the test."""
    logger = logging.getLogger("calc_rpc")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
    logger.setLevel(level)
