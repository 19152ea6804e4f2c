"""Structured logging with request and scan context"""
import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from .config import get_config

# Context variables bound for the lifetime of one webhook request / submission
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
current_media_id: ContextVar[Optional[int]] = ContextVar("current_media_id", default=None)
current_source: ContextVar[Optional[str]] = ContextVar("current_source", default=None)

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "taskName",
    "processName", "process", "getMessage", "exc_info",
    "exc_text", "stack_info", "message",
})


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        config = get_config()

        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": config.service_name,
            "version": config.service_version,
            "environment": config.environment,
        }

        corr_id = correlation_id.get()
        if corr_id:
            log_entry["correlation_id"] = corr_id
        media_id = current_media_id.get()
        if media_id is not None:
            log_entry["media_id"] = media_id
        source = current_source.get()
        if source:
            log_entry["source"] = source

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class StandardFormatter(logging.Formatter):
    """Standard text formatter"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging() -> None:
    """Setup application logging"""
    config = get_config()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if config.log_format.lower() == "json":
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(StandardFormatter())
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get logger instance, configuring the root logger on first use"""
    if not logging.getLogger().handlers:
        setup_logging()

    return logging.getLogger(name)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID"""
    return correlation_id.get()


@contextmanager
def scan_context(media_id: int, source: Optional[str] = None) -> Iterator[None]:
    """Bind the media and scanner source to every log line emitted inside the block"""
    media_token = current_media_id.set(media_id)
    source_token = current_source.set(source)
    try:
        yield
    finally:
        current_source.reset(source_token)
        current_media_id.reset(media_token)
