from __future__ import annotations

import logging
import sys
from typing import Any, Mapping


_ROOT_LOGGER_NAMES = ("runner", "src")
_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO}


class _FieldsFormatter(logging.Formatter):
    """`[runner] LEVEL message key=value ...` with fields passed via extra={"fields": {...}}."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"[runner] {record.levelname} {record.getMessage()}"
        fields = getattr(record, "fields", None)
        if isinstance(fields, Mapping) and fields:
            base += " " + " ".join(f"{k}={fields[k]!r}" for k in sorted(fields))
        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(level: str = "info", *, stream: Any = None) -> None:
    """Install one stream handler for the service loggers (idempotent)."""
    resolved = _LEVELS.get(str(level).strip().lower(), logging.INFO)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(_FieldsFormatter())
    for name in _ROOT_LOGGER_NAMES:
        logger = logging.getLogger(name)
        for existing in list(logger.handlers):
            if getattr(existing, "_runner_handler", False):
                logger.removeHandler(existing)
        handler._runner_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.setLevel(resolved)


def fields(**kwargs: Any) -> dict[str, Any]:
    """Shorthand for `extra=` structured context."""
    return {"fields": {k: v for k, v in kwargs.items() if v is not None}}
