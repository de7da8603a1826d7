"""Method metadata and service protocol introspection.

A service is declared as a ``typing.Protocol`` whose methods each take one
request argument and return one response.  The interaction pattern is
derived from the annotations::

    def sum(self, request: SumRequest) -> SumResponse                          # unary
    def primes(self, request: PrimesRequest) -> Iterator[PrimeFactor]          # server stream
    def average(self, requests: Iterator[Number]) -> Average                   # client stream
    def maximum(self, requests: Iterator[Number]) -> Iterator[Maximum]         # bidi stream

Request and response types must be :class:`~calc_rpc.codec.ArrowMessage`
dataclasses.
"""

from __future__ import annotations

import collections.abc
import functools
import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, get_args, get_origin, get_type_hints

import pyarrow as pa

from calc_rpc.codec import ArrowMessage
from calc_rpc.rpc._common import MethodType

_STREAM_ORIGINS: frozenset[Any] = frozenset(
    {collections.abc.Iterator, collections.abc.Iterable, collections.abc.Generator}
)


# ---------------------------------------------------------------------------
# RpcMethodInfo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RpcMethodInfo:
    """Metadata for a single RPC method, derived from Protocol type hints.

    Attributes:
        name: Method name as it appears on the Protocol (the wire method id).
        method_type: Interaction pattern.
        request_type: Message type sent by the client.
        response_type: Message type sent by the server.
        request_param: Name of the request parameter on the Protocol method.
        doc: The method's docstring from the Protocol class, if any.

    """

    name: str
    method_type: MethodType
    request_type: type[ArrowMessage]
    response_type: type[ArrowMessage]
    request_param: str
    doc: str | None = None

    @property
    def request_schema(self) -> pa.Schema:
        """Arrow schema of the request message."""
        return self.request_type.ARROW_SCHEMA

    @property
    def response_schema(self) -> pa.Schema:
        """Arrow schema of the response message."""
        return self.response_type.ARROW_SCHEMA


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


def _split_stream_hint(hint: Any) -> tuple[Any, bool]:
    """Return ``(element_type, is_stream)`` for ``Iterator[T]``-style hints."""
    if get_origin(hint) in _STREAM_ORIGINS:
        args = get_args(hint)
        return (args[0] if args else None), True
    return hint, False


def _require_message(protocol: type, method_name: str, role: str, hint: Any) -> type[ArrowMessage]:
    if not (isinstance(hint, type) and issubclass(hint, ArrowMessage)):
        raise TypeError(
            f"{protocol.__name__}.{method_name}() {role} type must be an ArrowMessage dataclass, got {hint!r}"
        )
    return hint


def _classify(protocol: type, name: str, attr: Any) -> RpcMethodInfo:
    try:
        hints = get_type_hints(attr)
    except (NameError, AttributeError) as exc:
        raise TypeError(f"Failed to resolve type hints for {protocol.__name__}.{name}(): {exc}") from exc

    params = [p for p in inspect.signature(attr).parameters.values() if p.name != "self"]
    if len(params) != 1 or params[0].kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
        raise TypeError(f"{protocol.__name__}.{name}() must take exactly one request parameter")
    param = params[0]
    if param.name not in hints or "return" not in hints:
        raise TypeError(f"{protocol.__name__}.{name}() must annotate its request parameter and return type")

    request_hint, client_streams = _split_stream_hint(hints[param.name])
    response_hint, server_streams = _split_stream_hint(hints["return"])

    if client_streams and server_streams:
        method_type = MethodType.BIDI_STREAM
    elif client_streams:
        method_type = MethodType.CLIENT_STREAM
    elif server_streams:
        method_type = MethodType.SERVER_STREAM
    else:
        method_type = MethodType.UNARY

    return RpcMethodInfo(
        name=name,
        method_type=method_type,
        request_type=_require_message(protocol, name, "request", request_hint),
        response_type=_require_message(protocol, name, "response", response_hint),
        request_param=param.name,
        doc=getattr(attr, "__doc__", None),
    )


@functools.lru_cache(maxsize=64)
def rpc_methods(protocol: type) -> Mapping[str, RpcMethodInfo]:
    """Introspect a Protocol class and return RpcMethodInfo for each method.

    Skips underscore-prefixed names and non-callable attributes.

    Raises:
        TypeError: If a method's signature does not fit one of the four
            interaction patterns.

    """
    result: dict[str, RpcMethodInfo] = {}
    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr):
            continue
        result[name] = _classify(protocol, name, attr)
    return MappingProxyType(result)


# ---------------------------------------------------------------------------
# Implementation validation
# ---------------------------------------------------------------------------


def _validate_implementation(
    protocol: type,
    implementation: object,
    methods: Mapping[str, RpcMethodInfo],
) -> None:
    """Validate that *implementation* conforms to *protocol*.

    Every protocol method must exist on the implementation, be callable, and
    accept the request positionally.  An optional ``ctx`` parameter is
    allowed; any other required parameter is an error.

    Raises:
        TypeError: If one or more validation errors are found.  The
            message lists every problem so they can be fixed in one pass.

    """
    errors: list[str] = []

    for name, info in methods.items():
        method = getattr(implementation, name, None)
        if method is None:
            errors.append(f"missing method {name}({info.request_param})")
            continue
        if not callable(method):
            errors.append(f"'{name}' exists but is not callable")
            continue

        params = [p for p in inspect.signature(method).parameters.values() if p.name != "self"]
        positional = [
            p for p in params if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        ]
        if not positional and not any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params):
            errors.append(f"'{name}()' does not accept the request argument")
            continue
        for param in positional[1:]:
            if param.name == "ctx":
                continue
            if param.default is inspect.Parameter.empty:
                errors.append(f"'{name}()' has required parameter '{param.name}' not defined in {protocol.__name__}")
        errors.extend(
            f"'{name}()' has required parameter '{p.name}' not defined in {protocol.__name__}"
            for p in params
            if p.kind == inspect.Parameter.KEYWORD_ONLY and p.name != "ctx" and p.default is inspect.Parameter.empty
        )

    if errors:
        impl_name = type(implementation).__name__
        header = f"{impl_name} does not implement {protocol.__name__}:"
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{header}\n{detail}")


def _accepts_ctx(method: Any) -> bool:
    """Whether an implementation method declares a ``ctx`` parameter."""
    return "ctx" in inspect.signature(method).parameters
