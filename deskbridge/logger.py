"""
Structured logging configuration with JSON support, correlation IDs and
per-event context (session key, action id).
"""
import logging
import sys
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger

from deskbridge.config import settings


# Context variable for correlation ID (trace_id)
correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Session key and action id of the event being handled
event_context: ContextVar[dict | None] = ContextVar("event_context", default=None)


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID and event context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "N/A"
        context = event_context.get() or {}
        record.session_key = context.get("session_key") or "-"
        record.action_id = context.get("action_id") or "-"
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict):
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["timestamp"] = self.formatTime(record, self.datefmt)

        if hasattr(record, "correlation_id"):
            log_record["correlation_id"] = record.correlation_id
        if getattr(record, "session_key", "-") != "-":
            log_record["session_key"] = record.session_key
        if getattr(record, "action_id", "-") != "-":
            log_record["action_id"] = record.action_id

        log_record["environment"] = settings.environment


def setup_logging() -> logging.Logger:
    """
    Configure application logging based on settings.

    Returns:
        Configured root logger
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.log_level))

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format == "json":
        formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] "
            "[%(session_key)s %(action_id)s] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    logger.addHandler(handler)

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_correlation_id(trace_id: str | None):
    """
    Set correlation ID for current context.

    Args:
        trace_id: Trace/correlation ID to set
    """
    correlation_id.set(trace_id)


def get_correlation_id() -> str | None:
    """
    Get current correlation ID.

    Returns:
        Current correlation ID or None
    """
    return correlation_id.get()


def set_event_context(session_key: str | None, action_id: str | None):
    """Bind the session key and action id of the current event to log records."""
    event_context.set({"session_key": session_key, "action_id": action_id})


# Initialize logging on module import
setup_logging()
