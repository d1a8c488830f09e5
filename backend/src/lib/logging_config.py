"""Centralized logging configuration for the question logic backend.

Output is one JSON object per line for log aggregators, or a compact
human-readable line when LOG_FORMAT=simple.

Usage:
    # Once, at startup:
    from src.lib.logging_config import configure_logging
    configure_logging()

    # In any module:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Recorded presentation", extra={"question_id": "q-1"})

The request, business and session ids from src/lib/context.py are attached to
every record by ContextFilter. Records from the question logic package also
carry a ``component`` field (frequency, triggers, harmonizer, ...) so that log
queries can be scoped to one stage of the selection pipeline.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from src.config import get_log_format, get_log_level
from src.lib.context import context_snapshot

CONTEXT_FIELDS = ("request_id", "business_id", "session_id")

QUESTION_LOGIC_LOGGER = "src.lib.question_logic"

# Libraries whose INFO output drowns out selection logs.
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def component_for(logger_name: str) -> Optional[str]:
    """Map a logger name to its pipeline component.

    ``src.lib.question_logic.frequency`` -> ``frequency``; loggers outside the
    question logic package have no component.
    """
    prefix = QUESTION_LOGIC_LOGGER + "."
    if not logger_name.startswith(prefix):
        return None
    return logger_name[len(prefix):].split(".", 1)[0]


def _format_exception(record: logging.LogRecord) -> Optional[str]:
    if record.exc_info and record.exc_info[1] is not None:
        return "".join(traceback.format_exception(*record.exc_info))
    return None


class ContextFilter(logging.Filter):
    """Attach request-scoped context and the pipeline component to records.

    Values passed explicitly through ``extra`` take precedence over the
    context variables.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in context_snapshot().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        if getattr(record, "component", None) is None:
            record.component = component_for(record.name)  # type: ignore[attr-defined]
        return True


class JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "component": getattr(record, "component", None),
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            log_entry[field] = getattr(record, field, None)

        exc_text = _format_exception(record)
        if exc_text:
            log_entry["exc_info"] = exc_text

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_entry:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable format for local development."""

    def format(self, record: logging.LogRecord) -> str:
        ctx_parts = []
        for field in CONTEXT_FIELDS:
            val = getattr(record, field, None)
            if val:
                ctx_parts.append(f"{field}={str(val)[:12]}")
        ctx_suffix = f" [{', '.join(ctx_parts)}]" if ctx_parts else ""

        component = getattr(record, "component", None)
        source = f"{record.name}:{component}" if component else record.name
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        base = f"{timestamp} {record.levelname:<8} {source} - {record.getMessage()}{ctx_suffix}"

        exc_text = _format_exception(record)
        if exc_text:
            base += "\n" + exc_text

        return base


def configure_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> logging.Handler:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name; defaults to LOG_LEVEL
        log_format: 'json' or 'simple'; defaults to LOG_FORMAT
        quiet_loggers: Loggers capped at WARNING

    Returns:
        The installed handler
    """
    level_name = (level or get_log_level()).upper()
    fmt = (log_format or get_log_format()).lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SimpleFormatter() if fmt == "simple" else JsonFormatter())
    handler.addFilter(ContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
