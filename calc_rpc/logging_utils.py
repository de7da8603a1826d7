# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter and logging setup for structured output.

Provides :class:`CalcJsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  All ``extra``
fields attached to a record (via ``LoggerAdapter`` or per-call ``extra``)
are automatically included, so access-log fields such as ``duration_ms``
and ``status_code`` need no allowlist.

This module is **not** auto-imported by ``calc_rpc``; import it explicitly::

    from calc_rpc.logging_utils import CalcJsonFormatter, configure_logging
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TextIO

__all__ = ["CalcJsonFormatter", "configure_logging"]

# Build the set of attribute names that every LogRecord has by default.
# Anything *not* in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class CalcJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``) are
    always present and cannot be overwritten by extra fields with the same
    name.  Every other non-default attribute on the ``LogRecord`` is emitted
    as an additional key.

    Exception information is included under the ``"exception"`` key when
    present.  Non-serializable values are coerced to strings via
    ``default=str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            # Emit extra fields, excluding default record attrs and reserved output keys
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: int | str = logging.INFO,
    *,
    json: bool = False,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach one stream handler to the ``calc_rpc`` logger hierarchy.

    Calling it again replaces the handler installed by the previous call,
    so the CLI can reconfigure without duplicating output.

    Args:
        level: Level for the ``calc_rpc`` logger (name or number).
        json: Emit single-line JSON records instead of text.
        stream: Destination stream (defaults to ``sys.stderr``).

    Returns:
        The installed handler.

    """
    logger = logging.getLogger("calc_rpc")
    for existing in list(logger.handlers):
        if getattr(existing, "_calc_rpc_configured", False):
            logger.removeHandler(existing)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(CalcJsonFormatter() if json else logging.Formatter(_TEXT_FORMAT))
    handler._calc_rpc_configured = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return handler
