# FILE: widelog/logging.py
from __future__ import annotations

import datetime as _dt
import logging
import sys
import traceback
from typing import Any, Dict, Optional, Set

from .utils import compact_json, ts_iso

# Max chars per string field in diagnostic lines
_MAX_FIELD = 8192

# Standard LogRecord attributes that are not treated as extra fields
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


class JSONFormatter(logging.Formatter):
    """
    Compact JSON formatter for the library's own diagnostics (enricher,
    hook and drain failures). Wide events never go through here.

    Fields: ts, lvl, logger, msg, any `extra=` keys, and exc_type /
    exc_message / stack when an exception is attached.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        evt: Dict[str, Any] = {
            "ts": ts_iso(_dt.datetime.fromtimestamp(record.created, _dt.timezone.utc)),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }
        for k, v in record.__dict__.items():
            if k in _LOG_RECORD_STD_ATTRS or k.startswith("_") or k in evt:
                continue
            evt[k] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        return compact_json(evt)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = True,
    logger_name: str = "widelog",
) -> logging.Logger:
    """
    Route the `widelog` logger hierarchy to `stream` (stderr by default) as
    JSON lines. Root logging is left alone.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    h = logging.StreamHandler(stream=stream or sys.stderr)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    lg = logging.getLogger(logger_name)
    lg.setLevel(lvl)
    _clear_handlers(lg)
    lg.addHandler(h)
    lg.propagate = False
    return lg


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "widelog")


__all__ = ["JSONFormatter", "configure_json_logging", "get_logger"]
