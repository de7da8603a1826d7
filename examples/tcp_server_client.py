"""Serve the calculator over TCP and call it with a paced bidirectional stream.

Run::

    python examples/tcp_server_client.py
"""

from __future__ import annotations

from calc_rpc import BidiCoordinator, RpcClient, SocketConnector, serve_tcp
from calc_rpc.calculator import CalculatorService, CalculatorServiceImpl, FindMaximumRequest, SumRequest
from calc_rpc.logging_utils import configure_logging


def main() -> None:
    """Run the example."""
    configure_logging("INFO")
    with serve_tcp(CalculatorService, CalculatorServiceImpl(), "127.0.0.1", 0) as listener:
        host, port = listener.address
        with RpcClient(CalculatorService, SocketConnector(host, port), default_timeout=10) as client:
            print(client.call("sum", SumRequest(first_number=3, second_number=10)))

            stream = client.open_bidi_stream("find_maximum")
            status = BidiCoordinator(stream).run(
                [FindMaximumRequest(number=n) for n in [2, 8, 1, 5, 37, 28, 42]],
                print,
                send_interval=0.2,
            )
            print(status)  # OK


if __name__ == "__main__":
    main()
