"""Structured JSON logging.

Every log line is one JSON object: ``ts``, ``level``, ``service``, ``logger``,
``event`` (the dotted event name passed to ``log_event``) plus the event's
fields. Exceptions are rendered under ``exception``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Optional

SERVICE_NAME = "preview-orchestrator"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_HANDLER_MARKER = "_preview_json_logger"


def _to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json_safe(item) for item in value), key=str)
    if isinstance(value, (list, tuple)):
        return [_to_json_safe(item) for item in value]
    return str(value)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "service": SERVICE_NAME,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(
            (key, _to_json_safe(value))
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def resolve_level(name: str | int | None, default: int = logging.INFO) -> int:
    if isinstance(name, int):
        return name
    normalized = str(name or "").strip().upper()
    level = logging.getLevelName(normalized) if normalized else default
    return level if isinstance(level, int) else default


def configure_json_logging(*, level: int | str = logging.INFO, stream: Optional[IO[str]] = None) -> None:
    """Install the JSON handler on the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _safe_field_name(key: str) -> str:
    return f"field_{key}" if key in _RECORD_ATTRS else key


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    logger.log(level, event, extra={_safe_field_name(k): _to_json_safe(v) for k, v in fields.items()})
