"""Logging setup: text or JSON output, per-conversation context, external call records."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Record attributes promoted to top-level JSON keys
CONTEXT_FIELDS = ("conversation_id", "phase", "request_id", "job_id")

NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "apscheduler",
    "twilio",
    "uvicorn.access",
)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Conversation context (``conversation_id``, ``phase``) sits at the top
    level so a single user's poller can be followed through the log stream;
    structured fields passed as ``extra={"extra_data": {...}}`` go under
    ``data``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["data"] = extra_data
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"

        return json.dumps(entry, default=str)


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that stamps fixed context onto every record.

    Usage:
        log = get_context_logger(__name__, conversation_id="c-1")
        log.info("Tick complete", extra={"extra_data": {"messages": 2}})
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def _build_handler(handler: logging.Handler, json_format: bool) -> logging.Handler:
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name.
        log_file: Also write to this file when given.
        json_format: Emit JSON lines instead of text.
    """
    handlers = [_build_handler(logging.StreamHandler(sys.stdout), json_format)]
    if log_file:
        handlers.append(_build_handler(logging.FileHandler(log_file), json_format))

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    """A logger whose records all carry ``context`` (e.g. ``conversation_id``)."""
    return ContextLogger(logging.getLogger(name), context)


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    duration_ms: float,
    **extra: Any,
) -> None:
    """
    Record one call to an outside service (DM provider, Slack, Twilio).

    Successful calls log at DEBUG since pollers make one every few seconds;
    failures log at WARNING.
    """
    data = {
        "service": service,
        "operation": operation,
        "success": success,
        "duration_ms": round(duration_ms, 2),
        **extra,
    }
    outcome = "ok" if success else "failed"
    log = logger.debug if success else logger.warning
    log(
        f"{service}.{operation} {outcome} in {duration_ms:.0f}ms",
        extra={"extra_data": data},
    )


__all__ = [
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "JSONFormatter",
    "ContextLogger",
]
