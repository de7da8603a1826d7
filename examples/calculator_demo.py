"""Calculator example: every call pattern against an in-process server.

The server runs on background threads and each call gets its own in-process
pipe, so no network is needed.

Run::

    python examples/calculator_demo.py
"""

from __future__ import annotations

from calc_rpc import RpcError, serve_pipe
from calc_rpc.calculator import (
    CalculatorService,
    CalculatorServiceImpl,
    ComputeAverageRequest,
    FindMaximumRequest,
    PrimeNumberDecompositionRequest,
    SquareRootRequest,
    SumRequest,
    SumWithDeadlineRequest,
)


def main() -> None:
    """Run the example."""
    with serve_pipe(CalculatorService, CalculatorServiceImpl(steps=3, step_seconds=0.5)) as svc:
        # Unary
        print(svc.sum(SumRequest(first_number=3, second_number=10)))  # SumResponse(sum_result=13)

        # Server streaming: factors arrive one at a time
        for factor in svc.prime_number_decomposition(PrimeNumberDecompositionRequest(number=120)):
            print(factor.prime_factor)  # 2 2 2 3 5

        # Client streaming: one response once the requests are exhausted
        average = svc.compute_average(ComputeAverageRequest(number=n) for n in [2, 5, 7, 9, 12, 57])
        print(average)  # ComputeAverageResponse(average=15.333...)

        # Bidirectional: each new running maximum is echoed
        stream = svc.find_maximum(FindMaximumRequest(number=n) for n in [2, 8, 1, 5, 37, 28, 42])
        print([r.maximum for r in stream])  # [2, 8, 37, 42]

        # Errors carry a status code
        try:
            svc.square_root(SquareRootRequest(number=-4))
        except RpcError as e:
            print(e.code.name, e.message)  # INVALID_ARGUMENT Received a negative number: -4

        # Deadlines: the same call succeeds or expires depending only on the timeout
        request = SumWithDeadlineRequest(first_number=1, second_number=2)
        print(svc.sum_with_deadline(request, timeout=5.0))  # SumWithDeadlineResponse(sum_result=3)
        try:
            svc.sum_with_deadline(request, timeout=0.2)
        except RpcError as e:
            print(e.code.name)  # DEADLINE_EXCEEDED


if __name__ == "__main__":
    main()
