from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4


# Context variable to attach exchange_id to every log record.
_EXCHANGE_ID: ContextVar[Optional[str]] = ContextVar("exchange_id", default=None)

_RESERVED = {
    "msg", "args", "levelname", "levelno", "name", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "processName", "process",
    "taskName", "exchange_id",
}


@contextmanager
def exchange_context(exchange_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag every log record emitted inside the block with one exchange id.

    A fresh id is generated when none is given. The previous id is restored on
    exit, so an exchange started from inside another scope does not leak.
    """
    token = _EXCHANGE_ID.set(exchange_id or uuid4().hex)
    try:
        yield _EXCHANGE_ID.get() or ""
    finally:
        _EXCHANGE_ID.reset(token)


def get_exchange_id() -> Optional[str]:
    return _EXCHANGE_ID.get()


class ExchangeIdFilter(logging.Filter):
    # Adds exchange_id to log records.
    def filter(self, record: logging.LogRecord) -> bool:
        record.exchange_id = _EXCHANGE_ID.get()
        return True


class JsonFormatter(logging.Formatter):
    # Structured JSON formatter for logs.
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "exchange_id": getattr(record, "exchange_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        # Include extras passed through extra={}
        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            try:
                json.dumps(value, ensure_ascii=False)
                payload[key] = value
            except TypeError:
                payload[key] = str(value)

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    # Configure root logging once.
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ExchangeIdFilter())

    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s exchange_id=%(exchange_id)s %(message)s"
        ))

    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
