"""
Logging setup.

Application messages go through loguru. Audit events (persisted scores,
calibration transitions, API requests) go through structlog as key-value
events rendered as JSON or console lines, depending on LOG_FORMAT.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog
from loguru import logger
from structlog.typing import EventDict, WrappedLogger

from moodscope.config import settings

# Event keys that may carry conversation text
CONVERSATION_KEYS = ("text", "messages", "summary", "evidence", "descriptors")

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)


def redact_conversation_text(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    """Replace values of conversation-text keys with a marker."""
    for key in event_dict:
        if key in CONVERSATION_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


class LoguruHandler(logging.Handler):
    """Forward stdlib records (SQLAlchemy, APScheduler, uvicorn) to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def configure_logging() -> None:
    serialize = settings.log_format == "json"
    sink_options = dict(
        format="{message}" if serialize else TEXT_FORMAT,
        level=settings.log_level,
        serialize=serialize,
        diagnose=settings.is_development,
    )

    logger.remove()
    logger.add(sys.stderr, **sink_options)
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(settings.log_file, rotation="100 MB", retention="10 days", **sink_options)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            redact_conversation_text,
            structlog.processors.JSONRenderer() if serialize else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(handlers=[LoguruHandler()], level=0, force=True)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger.debug(f"Logging configured: {settings.log_level} {settings.log_format} ({settings.app_env})")


def get_logger(name: str) -> Any:
    """Structured audit logger bound to a component name."""
    return structlog.get_logger(name)


configure_logging()
