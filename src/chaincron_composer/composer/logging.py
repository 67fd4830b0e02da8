"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Composer modules pass
workflow, node and stage identifiers through `extra=`, which end up under the
`extra` key of each JSON line.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, TextIO

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "uvicorn.access")


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields attached to `record` through `extra=`."""

    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    `static_fields` are copied onto every line, e.g. `{"service": "composer"}`.
    """

    def __init__(self, static_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        line: dict[str, Any] = dict(self.static_fields)
        line.update(
            timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        if extras := record_extras(record):
            line["extra"] = extras
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        # Decimal gas amounts, enums and tuples of node ids are common extras.
        return json.dumps(line, ensure_ascii=False, default=str)


def configure_logging(
    level: str,
    *,
    stream: TextIO | None = None,
    static_fields: Mapping[str, Any] | None = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> logging.Handler:
    """Send every record through a single JSON handler on the root logger.

    Handlers installed earlier are replaced. Loggers named in `quiet` only pass
    warnings and above unless the root level is stricter.

    Returns:
        The installed handler.
    """

    root = logging.getLogger()
    while root.handlers:
        root.removeHandler(root.handlers[0])

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(JsonFormatter(static_fields))
    root.addHandler(handler)
    root.setLevel(level.upper())

    floor = max(root.level, logging.WARNING)
    for name in quiet:
        logging.getLogger(name).setLevel(floor)
    return handler
