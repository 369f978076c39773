# src/factcounters/core/logging.py
"""Structured logging configuration for factcounters.

Uses structlog for structured events that carry fact ids, group names and
timings as fields rather than formatted text.

Both structlog and stdlib logging are configured to emit the same output
(JSON or console). ProcessorFormatter routes stdlib records through the
structlog processor chain, so SQLAlchemy or library warnings land in the
same stream as engine events.

The triggering fact id is bound as context for the whole of one
process() call, including the query threads it fans out to.
"""

import contextvars
import logging
import sys
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, Future
from contextlib import contextmanager
from typing import Any, TypeVar

import structlog
from structlog.stdlib import ProcessorFormatter

T = TypeVar("T")

# Third-party loggers that flood DEBUG output with connection and
# statement details. Kept at WARNING even when the engine runs in DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = (
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "opentelemetry",
    "opentelemetry.sdk",
)


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Drop the bookkeeping keys ProcessorFormatter always adds."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Caching off so tests can reconfigure
        cache_logger_on_first_use=False,
    )

    # stderr keeps stdout free for CLI JSON output
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Bound structlog logger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def bound_fact(fact_id: str) -> Iterator[None]:
    """Attach ``fact_id`` to every event logged inside the block.

    Events logged from pool threads carry it too when the work was handed
    over with submit_in_context().
    """
    with structlog.contextvars.bound_contextvars(fact_id=fact_id):
        yield


def submit_in_context(pool: Executor, fn: Callable[..., T], *args: Any) -> Future[T]:
    """Submit ``fn`` to ``pool`` running under a copy of the caller's context."""
    context = contextvars.copy_context()
    return pool.submit(context.run, fn, *args)
