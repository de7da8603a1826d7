"""End-to-end tests of the calculator service over pipe and TCP transports."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from calc_rpc.calculator import (
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
from calc_rpc.rpc import RpcError, StatusCode

if TYPE_CHECKING:
    from tests.conftest import ConnFactory


class TestUnary:
    """sum, square_root, and sum_with_deadline."""

    def test_sum(self, make_conn: ConnFactory) -> None:
        """Two numbers are added."""
        with make_conn() as svc:
            assert svc.sum(SumRequest(first_number=3, second_number=10)) == SumResponse(sum_result=13)

    def test_sum_is_repeatable(self, make_conn: ConnFactory) -> None:
        """The same request gives the same answer every time."""
        with make_conn() as svc:
            request = SumRequest(first_number=-4, second_number=9)
            assert svc.sum(request) == svc.sum(request) == SumResponse(sum_result=5)

    def test_sum_overflow(self, make_conn: ConnFactory) -> None:
        """A sum outside int32 is rejected instead of wrapping."""
        with make_conn() as svc, pytest.raises(RpcError) as exc_info:
            svc.sum(SumRequest(first_number=2**31 - 1, second_number=1))
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
        assert "overflows int32" in exc_info.value.message

    def test_square_root(self, make_conn: ConnFactory) -> None:
        """The square root of 16 is 4."""
        with make_conn() as svc:
            assert svc.square_root(SquareRootRequest(number=16)) == SquareRootResponse(number_root=4.0)

    def test_square_root_of_zero(self, make_conn: ConnFactory) -> None:
        """Zero is a valid input."""
        with make_conn() as svc:
            assert svc.square_root(SquareRootRequest(number=0)).number_root == 0.0

    def test_square_root_negative(self, make_conn: ConnFactory) -> None:
        """A negative input fails with INVALID_ARGUMENT naming the number."""
        with make_conn() as svc, pytest.raises(RpcError) as exc_info:
            svc.square_root(SquareRootRequest(number=-4))
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
        assert exc_info.value.message == "Received a negative number: -4"
        assert exc_info.value.request_id

    def test_sum_with_deadline_in_time(self, make_conn: ConnFactory) -> None:
        """A generous deadline lets the slow sum finish."""
        with make_conn() as svc:
            response = svc.sum_with_deadline(SumWithDeadlineRequest(first_number=1, second_number=2), timeout=5.0)
        assert response == SumWithDeadlineResponse(sum_result=3)

    def test_sum_with_deadline_too_short(self, make_conn: ConnFactory) -> None:
        """A deadline shorter than the work fails with DEADLINE_EXCEEDED."""
        with make_conn() as svc, pytest.raises(RpcError) as exc_info:
            svc.sum_with_deadline(SumWithDeadlineRequest(first_number=1, second_number=2), timeout=0.1)
        assert exc_info.value.code == StatusCode.DEADLINE_EXCEEDED

    def test_default_timeout_applies(self, make_conn: ConnFactory) -> None:
        """The connection's default timeout bounds calls that pass none."""
        with make_conn(default_timeout=0.1) as svc, pytest.raises(RpcError) as exc_info:
            svc.sum_with_deadline(SumWithDeadlineRequest(first_number=1, second_number=2))
        assert exc_info.value.code == StatusCode.DEADLINE_EXCEEDED


class TestServerStream:
    """prime_number_decomposition."""

    def test_decomposition(self, make_conn: ConnFactory) -> None:
        """12 decomposes into 2, 2, 3 in order."""
        with make_conn() as svc:
            reader = svc.prime_number_decomposition(PrimeNumberDecompositionRequest(number=12))
            factors = [r.prime_factor for r in reader]
        assert factors == [2, 2, 3]

    def test_product_of_factors(self, make_conn: ConnFactory) -> None:
        """The streamed factors multiply back to the input."""
        number = 2 * 2 * 3 * 5 * 7 * 7 * 97
        with make_conn() as svc:
            reader = svc.prime_number_decomposition(PrimeNumberDecompositionRequest(number=number))
            factors = [r.prime_factor for r in reader]
        product = 1
        for f in factors:
            product *= f
        assert product == number
        assert factors == sorted(factors)

    def test_prime_input(self, make_conn: ConnFactory) -> None:
        """A prime decomposes into itself."""
        with make_conn() as svc:
            responses = list(svc.prime_number_decomposition(PrimeNumberDecompositionRequest(number=97)))
        assert responses == [PrimeNumberDecompositionResponse(prime_factor=97)]

    @pytest.mark.parametrize("number", [0, 1, -5])
    def test_no_factors(self, make_conn: ConnFactory, number: int) -> None:
        """Numbers below 2 produce an empty stream that still ends OK."""
        with make_conn() as svc:
            reader = svc.prime_number_decomposition(PrimeNumberDecompositionRequest(number=number))
            assert list(reader) == []
            status = reader.wait(5)
        assert status is not None
        assert status.ok


class TestClientStream:
    """compute_average."""

    def test_average(self, make_conn: ConnFactory) -> None:
        """The mean of 2, 5, 7, 9, 12, 57 is 92 / 6."""
        numbers = [2, 5, 7, 9, 12, 57]
        with make_conn() as svc:
            response = svc.compute_average(ComputeAverageRequest(number=n) for n in numbers)
        assert isinstance(response, ComputeAverageResponse)
        assert response.average == pytest.approx(92 / 6)

    def test_single_value(self, make_conn: ConnFactory) -> None:
        """One value averages to itself."""
        with make_conn() as svc:
            assert svc.compute_average([ComputeAverageRequest(number=7)]).average == 7.0

    def test_empty_stream(self, make_conn: ConnFactory) -> None:
        """Averaging nothing fails with INVALID_ARGUMENT."""
        with make_conn() as svc, pytest.raises(RpcError) as exc_info:
            svc.compute_average([])
        assert exc_info.value.code == StatusCode.INVALID_ARGUMENT
        assert exc_info.value.message == "cannot compute the average of an empty stream"


class TestBidiStream:
    """find_maximum through the typed proxy."""

    def test_running_maximum(self, make_conn: ConnFactory) -> None:
        """Each new maximum is echoed once, in order."""
        numbers = [2, 8, 1, 5, 37, 28, 42]
        with make_conn() as svc:
            stream = svc.find_maximum(FindMaximumRequest(number=n) for n in numbers)
            maxima = [r.maximum for r in stream]
        assert maxima == [2, 8, 37, 42]

    def test_negative_first_value_is_echoed(self, make_conn: ConnFactory) -> None:
        """The first value is always a new maximum, even when negative."""
        with make_conn() as svc:
            responses = list(svc.find_maximum([FindMaximumRequest(number=-3), FindMaximumRequest(number=-7)]))
        assert responses == [FindMaximumResponse(maximum=-3)]

    def test_empty_stream(self, make_conn: ConnFactory) -> None:
        """No requests means no responses and an OK status."""
        with make_conn() as svc:
            stream = svc.find_maximum([])
            assert list(stream) == []
            status = stream.wait(5)
        assert status is not None
        assert status.ok

    def test_request_sender_joined_by_wait(self, make_conn: ConnFactory) -> None:
        """The proxy's background request sender has stopped once ``wait`` returns."""
        with make_conn() as svc:
            stream = svc.find_maximum(FindMaximumRequest(number=n) for n in [4, 9, 2])
            assert [r.maximum for r in stream] == [4, 9]
            status = stream.wait(5)
        assert status is not None
        assert status.ok
        assert stream.sender is not None
        assert not stream.sender.is_alive()
