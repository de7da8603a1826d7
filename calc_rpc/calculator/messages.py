"""Request and response messages of the calculator service.

Field order is the wire position; the annotation fixes the Arrow scalar type.
"""

from __future__ import annotations

from dataclasses import dataclass

from calc_rpc.codec import ArrowMessage, Float64, Int32, Int64

__all__ = [
    "ComputeAverageRequest",
    "ComputeAverageResponse",
    "FindMaximumRequest",
    "FindMaximumResponse",
    "PrimeNumberDecompositionRequest",
    "PrimeNumberDecompositionResponse",
    "SquareRootRequest",
    "SquareRootResponse",
    "SumRequest",
    "SumResponse",
    "SumWithDeadlineRequest",
    "SumWithDeadlineResponse",
]


@dataclass(frozen=True)
class SumRequest(ArrowMessage):
    """Two operands to add."""

    first_number: Int32
    second_number: Int32


@dataclass(frozen=True)
class SumResponse(ArrowMessage):
    """The sum of a :class:`SumRequest`."""

    sum_result: Int32


@dataclass(frozen=True)
class PrimeNumberDecompositionRequest(ArrowMessage):
    """Number to factor into primes."""

    number: Int64


@dataclass(frozen=True)
class PrimeNumberDecompositionResponse(ArrowMessage):
    """One prime factor, streamed as soon as it is found."""

    prime_factor: Int64


@dataclass(frozen=True)
class ComputeAverageRequest(ArrowMessage):
    """One sample of the stream to average."""

    number: Int32


@dataclass(frozen=True)
class ComputeAverageResponse(ArrowMessage):
    """Mean of every sample the client sent."""

    average: Float64


@dataclass(frozen=True)
class FindMaximumRequest(ArrowMessage):
    """One candidate for the running maximum."""

    number: Int32


@dataclass(frozen=True)
class FindMaximumResponse(ArrowMessage):
    """A new running maximum."""

    maximum: Int32


@dataclass(frozen=True)
class SquareRootRequest(ArrowMessage):
    """Non-negative number whose square root is wanted."""

    number: Int32


@dataclass(frozen=True)
class SquareRootResponse(ArrowMessage):
    """Square root of a :class:`SquareRootRequest`."""

    number_root: Float64


@dataclass(frozen=True)
class SumWithDeadlineRequest(ArrowMessage):
    """Two operands to add slowly."""

    first_number: Int32
    second_number: Int32


@dataclass(frozen=True)
class SumWithDeadlineResponse(ArrowMessage):
    """The sum of a :class:`SumWithDeadlineRequest`."""

    sum_result: Int32
