"""Allow ``python -m calc_rpc``."""

from calc_rpc.cli import app

app()
