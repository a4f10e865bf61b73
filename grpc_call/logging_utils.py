# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Structured logging output for ``grpc_call``.

:class:`GrpcCallJsonFormatter` renders each record as one JSON line with
every ``extra`` field the component attaches (``service``, ``method``,
``request_id``, ``duration_ms``, ``status``, ``state``...).  gRPC status
codes and other enums are written by name, metadata bytes as text.

:func:`configure_logging` is what the CLI's ``--verbose``/``--json-logs``
flags use; library users normally configure handlers themselves.

This module is **not** auto-imported by ``grpc_call``; import it explicitly::

    from grpc_call.logging_utils import GrpcCallJsonFormatter
"""

from __future__ import annotations

import json
import logging
from enum import Enum

__all__ = ["GrpcCallJsonFormatter", "configure_logging"]

_STANDARD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_OUTPUT_KEYS: tuple[str, ...] = ("timestamp", "level", "logger", "message", "exception", "stack_info")


def _to_json(value: object) -> object:
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class GrpcCallJsonFormatter(logging.Formatter):
    """One JSON object per record, standard keys first, then extras.

    Extras never replace ``timestamp``, ``level``, ``logger``, ``message``,
    ``exception`` or ``stack_info``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format *record* as a single JSON line."""
        record.message = record.getMessage()
        out: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS or key in _OUTPUT_KEYS:
                continue
            out[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            out["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            out["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(out, default=_to_json)


def configure_logging(level: int = logging.INFO, *, json_output: bool = False) -> logging.Handler:
    """Attach a stderr handler to the ``grpc_call`` logger.

    Args:
        level: Level for the ``grpc_call`` hierarchy (``DEBUG`` also shows
            ``grpc_call.wire.*``).
        json_output: Use :class:`GrpcCallJsonFormatter` instead of plain text.

    Returns:
        The installed handler, so callers can remove it again.

    """
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(GrpcCallJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("grpc_call")
    root.addHandler(handler)
    root.setLevel(level)
    return handler
