"""The calculator service: its Protocol and the reference implementation.

One method per interaction pattern, plus a deliberately slow unary method
for exercising deadlines and cancellation::

    sum                          unary
    square_root                  unary (validates its input)
    sum_with_deadline            unary (slow, polls for cancellation)
    prime_number_decomposition   server stream
    compute_average              client stream
    find_maximum                 bidirectional stream
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterator
from typing import Protocol

from calc_rpc.calculator.messages import (
    ComputeAverageRequest,
    ComputeAverageResponse,
    FindMaximumRequest,
    FindMaximumResponse,
    PrimeNumberDecompositionRequest,
    PrimeNumberDecompositionResponse,
    SquareRootRequest,
    SquareRootResponse,
    SumRequest,
    SumResponse,
    SumWithDeadlineRequest,
    SumWithDeadlineResponse,
)
from calc_rpc.rpc import RpcError, ServerContext, StatusCode

__all__ = ["INT32_MAX", "INT32_MIN", "CalculatorService", "CalculatorServiceImpl"]

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


class CalculatorService(Protocol):
    """Arithmetic over the four RPC interaction patterns."""

    def sum(self, request: SumRequest) -> SumResponse:
        """Add two int32 numbers."""
        ...

    def prime_number_decomposition(
        self, request: PrimeNumberDecompositionRequest
    ) -> Iterator[PrimeNumberDecompositionResponse]:
        """Stream the prime factors of a number in non-decreasing order."""
        ...

    def compute_average(self, requests: Iterator[ComputeAverageRequest]) -> ComputeAverageResponse:
        """Average a stream of numbers."""
        ...

    def find_maximum(self, requests: Iterator[FindMaximumRequest]) -> Iterator[FindMaximumResponse]:
        """Echo each new running maximum of a stream of numbers."""
        ...

    def square_root(self, request: SquareRootRequest) -> SquareRootResponse:
        """Square root of a non-negative number."""
        ...

    def sum_with_deadline(self, request: SumWithDeadlineRequest) -> SumWithDeadlineResponse:
        """Add two numbers after a fixed amount of simulated work."""
        ...


def _checked_sum(first: int, second: int) -> int:
    result = first + second
    if not INT32_MIN <= result <= INT32_MAX:
        raise RpcError(StatusCode.INVALID_ARGUMENT, f"Sum of {first} and {second} overflows int32")
    return result


class CalculatorServiceImpl:
    """Stateless handlers; the instance only carries configuration.

    Args:
        steps: Work units ``sum_with_deadline`` performs.
        step_seconds: Duration of one work unit.

    """

    def __init__(self, *, steps: int = 3, step_seconds: float = 1.0) -> None:
        """Configure the simulated work of ``sum_with_deadline``."""
        self.steps = steps
        self.step_seconds = step_seconds

    def sum(self, request: SumRequest, ctx: ServerContext) -> SumResponse:
        """Add two int32 numbers, rejecting results that overflow."""
        ctx.logger.info("Received Sum RPC: %s", request)
        return SumResponse(sum_result=_checked_sum(request.first_number, request.second_number))

    def prime_number_decomposition(
        self, request: PrimeNumberDecompositionRequest, ctx: ServerContext
    ) -> Iterator[PrimeNumberDecompositionResponse]:
        """Trial division, sending each factor as soon as it is found.

        Numbers below 2 have no prime factors and yield an empty stream.
        """
        ctx.logger.info("Received PrimeNumberDecomposition RPC: %s", request)
        number = request.number
        divisor = 2
        while number > 1:
            if not ctx.is_active():
                return
            if divisor * divisor > number:
                # What is left is prime.
                yield PrimeNumberDecompositionResponse(prime_factor=number)
                return
            if number % divisor == 0:
                yield PrimeNumberDecompositionResponse(prime_factor=divisor)
                number //= divisor
            else:
                divisor += 1

    def compute_average(
        self, requests: Iterator[ComputeAverageRequest], ctx: ServerContext
    ) -> ComputeAverageResponse:
        """Running sum and count, divided once the client closes its stream."""
        ctx.logger.info("Received ComputeAverage RPC")
        total = 0
        count = 0
        for request in requests:
            total += request.number
            count += 1
        if count == 0:
            raise RpcError(StatusCode.INVALID_ARGUMENT, "cannot compute the average of an empty stream")
        return ComputeAverageResponse(average=total / count)

    def find_maximum(
        self, requests: Iterator[FindMaximumRequest], ctx: ServerContext
    ) -> Iterator[FindMaximumResponse]:
        """Echo the first number, then every number greater than all before it."""
        ctx.logger.info("Received FindMaximum RPC")
        maximum: int | None = None
        for request in requests:
            if maximum is None or request.number > maximum:
                maximum = request.number
                yield FindMaximumResponse(maximum=maximum)

    def square_root(self, request: SquareRootRequest, ctx: ServerContext) -> SquareRootResponse:
        """Square root; negative input is an ``INVALID_ARGUMENT``."""
        ctx.logger.info("Received SquareRoot RPC")
        if request.number < 0:
            ctx.abort(StatusCode.INVALID_ARGUMENT, f"Received a negative number: {request.number}")
        return SquareRootResponse(number_root=math.sqrt(request.number))

    def sum_with_deadline(self, request: SumWithDeadlineRequest, ctx: ServerContext) -> SumWithDeadlineResponse:
        """Add two numbers after ``steps`` units of work, checking for cancellation before each."""
        ctx.logger.info("Received SumWithDeadline RPC: %s", request)
        for _ in range(self.steps):
            if ctx.cancelled:
                ctx.logger.info("The client canceled the request")
                ctx.abort(StatusCode.CANCELLED, "The client canceled the request")
            if not ctx.is_active():
                break
            time.sleep(self.step_seconds)
        return SumWithDeadlineResponse(sum_result=_checked_sum(request.first_number, request.second_number))
