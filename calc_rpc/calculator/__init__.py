"""Calculator service definition, messages, and reference implementation."""

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
from calc_rpc.calculator.service import CalculatorService, CalculatorServiceImpl

__all__ = [
    "CalculatorService",
    "CalculatorServiceImpl",
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
