"""
structlog setup for the decision engine and its worker.

Console output in development, one JSON object per line elsewhere. While
a decision is evaluated, ``decision_context`` binds its request, subject
and scope ids so every event emitted underneath carries them.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from accessgate.core.config import Settings, get_settings

# Library loggers that are only interesting when something goes wrong
_QUIET_LOGGERS = ("asyncio", "redis", "sqlalchemy.engine", "sqlalchemy.pool")


def _service_info(name: str, version: str) -> Processor:
    def add_service(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", name)
        event_dict.setdefault("service_version", version)
        return event_dict

    return add_service


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Development gets a colored console renderer; staging and production
    get JSON with structured tracebacks.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_info(settings.project_name, settings.version),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.environment == "development":
        renderer: list[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextmanager
def decision_context(**values: Any) -> Iterator[None]:
    """Bind non-empty ``values`` to every log event inside the block."""
    bound = {key: value for key, value in values.items() if value not in (None, "")}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
