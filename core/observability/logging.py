"""
Structured Logging with Correlation IDs

Every log line emitted while matching or learning carries the IDs of the
draw and invoice being processed:
- draw_id: Links logs to a draw request
- invoice_id: Links logs to a specific invoice
- workflow_id: Links logs to Temporal workflow execution
- activity_name / stage: Where in the pipeline the line came from

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(draw_id="DRAW-7", invoice_id="INV-1"):
        logger.info("Generating candidates", extra_fields={"lines": 4})
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


@dataclass(frozen=True)
class CorrelationContext:
    """IDs that tie a log line to a draw, an invoice and a Temporal run."""
    draw_id: Optional[str] = None
    invoice_id: Optional[str] = None
    workflow_id: Optional[str] = None
    activity_name: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def label(self) -> str:
        parts = []
        if self.draw_id:
            parts.append(f"draw:{self.draw_id}")
        if self.invoice_id:
            parts.append(f"inv:{self.invoice_id}")
        if self.workflow_id:
            parts.append(self.workflow_id[:12])
        return "/".join(parts) or "-"


_EMPTY_CONTEXT = CorrelationContext()
_current: ContextVar[CorrelationContext] = ContextVar("draw_matching_correlation", default=_EMPTY_CONTEXT)


def get_correlation_context() -> CorrelationContext:
    return _current.get()


@contextmanager
def with_correlation(**ids: Optional[str]) -> Iterator[CorrelationContext]:
    """Layer IDs over the current context until the block exits.

    None values leave the outer value in place, so nested blocks only
    need to name what they add.
    """
    scoped = replace(get_correlation_context(), **{k: v for k, v in ids.items() if v is not None})
    token = _current.set(scoped)
    try:
        yield scoped
    finally:
        _current.reset(token)


def _record_context(record: logging.LogRecord) -> CorrelationContext:
    return getattr(record, "correlation", None) or get_correlation_context()


class CorrelationFilter(logging.Filter):
    """Stamps each record with the context active when it was created."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation"):
            record.correlation = get_correlation_context()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, IDs, extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_context(record).to_dict())
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Console format:
    2026-01-09 12:00:00 [INFO ] draw_matching.engine [draw:DRAW-7/inv:INV-1]: Invoice auto-matched confidence=0.93
    """

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} [{record.levelname:5}] "
            f"{record.name} [{_record_context(record).label()}]: {record.getMessage()}"
        )
        extra = getattr(record, "extra_fields", None)
        if extra:
            line += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class CorrelatedLogger(logging.LoggerAdapter):
    """Logger accepting `extra_fields=` on every call.

    The fields land on the record as `record.extra_fields` and are rendered
    by both formatters.
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        fields = kwargs.pop("extra_fields", None) or {}
        extra = dict(kwargs.get("extra") or {})
        extra["extra_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


_LOG_JSON_ENV = "DRAW_MATCHING_LOG_JSON"
_OWN_LOGGERS = ("draw_matching", "activities", "workflows", "workers", "api", "core")
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "aiohttp")

_loggers: Dict[str, CorrelatedLogger] = {}
_handler: Optional[logging.Handler] = None


def configure_logging(level: int = logging.INFO, json_format: Optional[bool] = None) -> None:
    """
    Install the stdout handler on the root logger (once per process).

    Args:
        level: Level for the root logger and this project's loggers
        json_format: JSON lines instead of console format. Defaults to the
            DRAW_MATCHING_LOG_JSON environment variable.
    """
    global _handler

    if _handler is not None:
        return

    if json_format is None:
        json_format = os.getenv(_LOG_JSON_ENV, "").lower() in ("1", "true", "yes")

    _handler = logging.StreamHandler(sys.stdout)
    _handler.setLevel(level)
    _handler.addFilter(CorrelationFilter())
    _handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(_handler)

    for name in _OWN_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("temporalio").setLevel(logging.INFO)


def get_logger(name: str) -> CorrelatedLogger:
    if name not in _loggers:
        configure_logging()
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]


# Activity lifecycle lines share one logger per activity name.

def log_activity_start(activity_name: str, **fields):
    get_logger(f"activities.{activity_name}").info(f"{activity_name} started", extra_fields=fields)


def log_activity_complete(activity_name: str, duration_ms: Optional[float] = None, **fields):
    if duration_ms is not None:
        fields = {"duration_ms": round(duration_ms, 1), **fields}
    get_logger(f"activities.{activity_name}").info(f"{activity_name} completed", extra_fields=fields)


def log_activity_error(activity_name: str, error: str, **fields):
    get_logger(f"activities.{activity_name}").error(f"{activity_name} failed: {error}", extra_fields=fields)
