"""Typed message codec built on Arrow record batches.

Every RPC message is a frozen dataclass that mixes in :class:`ArrowMessage`.
The Arrow schema is derived from the field annotations; an instance travels
as a single-row ``pa.RecordBatch``.  The RPC core never looks at schema
internals beyond :meth:`ArrowMessage.to_batch` / :meth:`ArrowMessage.from_batch`.

KEY CLASSES
-----------
ArrowType : Annotation marker overriding the inferred Arrow type of a field
ArrowMessage : Mixin adding ``ARROW_SCHEMA`` and encode/decode helpers
CodecError : Raised when a message cannot be encoded or a batch decoded

Set ``CALC_RPC_IPC_DEBUG=1`` to trace every encode/decode on stderr.
"""

import os
import sys
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from types import UnionType
from typing import (
    Annotated,
    Any,
    ClassVar,
    Self,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import pyarrow as pa
import structlog
from pyarrow import ipc

__all__ = [
    "ArrowMessage",
    "ArrowType",
    "CodecError",
    "Float64",
    "Int32",
    "Int64",
    "empty_batch",
]

# Codec debug logging - enable with CALC_RPC_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("CALC_RPC_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the codec debug logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="codec")
    return _ipc_log


class CodecError(Exception):
    """A message could not be encoded, or a record batch decoded into the expected type."""


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return an empty batch conforming to the schema."""
    return pa.RecordBatch.from_arrays(
        [pa.array([], type=field.type) for field in schema],
        schema=schema,
    )


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify explicit Arrow type for a field.

    Use with Annotated to override the default inferred Arrow type::

        @dataclass(frozen=True)
        class SumRequest(ArrowMessage):
            first_number: Annotated[int, ArrowType(pa.int32())]

    """

    arrow_type: pa.DataType


Int32 = Annotated[int, ArrowType(pa.int32())]
Int64 = Annotated[int, ArrowType(pa.int64())]
Float64 = Annotated[float, ArrowType(pa.float64())]


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is Optional (X | None) and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable).

    """
    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True
    return python_type, False


_SIMPLE_TYPES: dict[type, pa.DataType] = {
    str: pa.string(),
    bytes: pa.binary(),
    int: pa.int64(),
    float: pa.float64(),
    bool: pa.bool_(),
}


def _infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer an Arrow type from a field annotation.

    Supports ``str``, ``bytes``, ``int``, ``float``, ``bool``, their
    ``Optional`` forms, and ``Annotated[T, ArrowType(...)]`` overrides.

    Raises:
        TypeError: If the type cannot be inferred.

    """
    inner_type, _ = _is_optional_type(python_type)
    if inner_type is not python_type:
        return _infer_arrow_type(inner_type)

    if get_origin(python_type) is Annotated:
        args = get_args(python_type)
        for arg in args[1:]:
            if isinstance(arg, ArrowType):
                return arg.arrow_type
        return _infer_arrow_type(args[0])

    if python_type in _SIMPLE_TYPES:
        return _SIMPLE_TYPES[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


class _ArrowSchemaDescriptor:
    """Descriptor that lazily generates ARROW_SCHEMA on first access.

    ``@dataclass`` runs after class creation, so the fields are only known
    once the class object is complete.  The schema is cached per class.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        self._name = name

    def __get__(self, instance: object | None, owner: type["ArrowMessage"]) -> pa.Schema:
        cache_attr = f"_cached_{self._name}"
        cached = owner.__dict__.get(cache_attr)
        if cached is not None:
            return cached
        schema = self._generate_schema(owner)
        setattr(owner, cache_attr, schema)
        return schema

    def _generate_schema(self, cls: type["ArrowMessage"]) -> pa.Schema:
        type_hints = get_type_hints(cls, include_extras=True)
        arrow_fields: list[pa.Field[Any]] = []
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            field_type = type_hints.get(field.name, field.type)
            base = get_args(field_type)[0] if get_origin(field_type) is Annotated else field_type
            _, nullable = _is_optional_type(base)
            try:
                arrow_type = _infer_arrow_type(field_type)
            except TypeError as e:
                raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{field.name}: {e}") from e
            arrow_fields.append(pa.field(field.name, arrow_type, nullable=nullable))
        return pa.schema(arrow_fields)


class ArrowMessage:
    """Mixin for frozen dataclasses that travel as single-row Arrow batches.

    Field order in the dataclass is the field position on the wire; the
    scalar type comes from the annotation (``Int32``, ``Float64`` ...).
    Optional fields (annotated with ``| None``) are marked nullable.

    Attributes:
        ARROW_SCHEMA: Auto-generated Arrow schema from field annotations.

    """

    ARROW_SCHEMA: ClassVar[pa.Schema] = _ArrowSchemaDescriptor()  # type: ignore[assignment]

    def to_batch(self) -> pa.RecordBatch:
        """Encode this message as a single-row record batch.

        Raises:
            CodecError: If a field value does not fit its Arrow type.

        """
        row = {f.name: getattr(self, f.name) for f in dataclass_fields(self)}  # type: ignore[arg-type]
        try:
            batch = pa.RecordBatch.from_pylist([row], schema=self.ARROW_SCHEMA)
        except (ValueError, OverflowError, pa.ArrowException) as exc:
            raise CodecError(f"Cannot encode {type(self).__name__}: {exc}") from exc
        if _IPC_DEBUG:
            _get_ipc_log().debug("encode", message=type(self).__name__, row=row)
        return batch

    @classmethod
    def from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Decode a single-row record batch into an instance.

        Raises:
            CodecError: If the batch does not hold exactly one row or lacks a
                required field.

        """
        if batch.num_rows != 1:
            raise CodecError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        row: dict[str, Any] = batch.to_pylist()[0]
        kwargs: dict[str, Any] = {}
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            if field.name in row:
                kwargs[field.name] = row[field.name]
            elif field.default is MISSING and field.default_factory is MISSING:
                raise CodecError(f"Missing field '{field.name}' in {cls.__name__} RecordBatch. Found: {sorted(row)}")
        if _IPC_DEBUG:
            _get_ipc_log().debug("decode", message=cls.__name__, row=row)
        return cls(**kwargs)

    def serialize_to_bytes(self) -> bytes:
        """Encode this message as a complete Arrow IPC stream."""
        batch = self.to_batch()
        sink = pa.BufferOutputStream()
        with ipc.new_stream(sink, batch.schema) as writer:
            writer.write_batch(batch)
        return sink.getvalue().to_pybytes()

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Decode a message from Arrow IPC stream bytes produced by :meth:`serialize_to_bytes`."""
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            try:
                batch = reader.read_next_batch()
            except StopIteration:
                raise CodecError(f"No RecordBatch found for {cls.__name__}") from None
        return cls.from_batch(batch)
