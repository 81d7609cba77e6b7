import logging
import sys

import structlog

from upsync.config import settings

REDACTED = "[redacted]"

# Event keys that may carry the Up Bank personal access token
_SECRET_KEYS = {"token", "authorization", "access_token", "encryption_key"}
_TOKEN_PREFIX = "up:yeah:"


def redact_secrets(logger, method_name, event_dict):
    """Mask the access token wherever it ends up in an event."""
    for key, value in event_dict.items():
        if key.lower() in _SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and _TOKEN_PREFIX in value:
            event_dict[key] = value.split(_TOKEN_PREFIX, 1)[0] + REDACTED
    return event_dict


def setup_logging(level: str | int | None = None):
    """JSON lines on stdout, one object per event.

    Every event carries the service name and environment. The level defaults
    to settings.log_level; stdlib loggers (uvicorn, sqlalchemy) share it.
    """
    level = level or settings.log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service="upsync", environment=settings.environment)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)


def get_logger(name: str = "upsync"):
    return structlog.get_logger(name)
