# src/sqlsalvage/core/logging.py
"""Structured logging for sqlsalvage.

structlog renders every line, including stdlib records from uvicorn and
Starlette, which reach it through ProcessorFormatter. Output goes to stderr:
the CLI reserves stdout for results (``probe`` prints JSON there).

Session identity travels in contextvars, so every coroutine of one recovery
task logs its session_id without passing loggers around.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# Chatty at DEBUG: per-request access lines, multipart parser state, asyncio
# slow-callback warnings while a large dump is being pumped.
_QUIET_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "multipart",
    "python_multipart",
    "httpx",
    "httpcore",
    "uvicorn.access",
)

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _drop_formatter_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """ProcessorFormatter always adds _record and _from_structlog; keep them out of output."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderers(json_output: bool, stream: TextIO) -> list[Any]:
    if json_output:
        return [
            _drop_formatter_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [
        _drop_formatter_keys,
        structlog.dev.ConsoleRenderer(colors=stream.isatty()),
    ]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Install the structlog pipeline and a single root handler.

    Safe to call repeatedly; the CLI calls it once per command and the test
    suite once per session.

    Args:
        json_output: One JSON object per line instead of console output.
        level: DEBUG, INFO, WARNING or ERROR.
        stream: Destination, stderr by default.
    """
    if level.upper() not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {', '.join(_LEVELS)}")
    log_level = getattr(logging, level.upper())
    target = stream if stream is not None else sys.stderr
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration must reach loggers created at import time.
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(target)
    handler.setFormatter(ProcessorFormatter(processors=_renderers(json_output, target), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    quiet_level = max(log_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def session_context(session_id: str, **extra: Any) -> Iterator[None]:
    """Bind session_id (and extra keys) to every log line in this context."""
    tokens = structlog.contextvars.bind_contextvars(session_id=session_id, **extra)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
