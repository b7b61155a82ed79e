import logging
import sys
from typing import Any

import structlog

from .settings import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for workers and the enqueueing process."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Any] = [
        # Job context bound by the worker, then timestamps
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_job_context(**context: Any) -> None:
    """Attach job-specific context to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_job_context(*keys: str) -> None:
    """Remove job context bound by bind_job_context."""
    structlog.contextvars.unbind_contextvars(*keys)
