# src/testpulse/core/logging.py
"""structlog setup shared by the CLI and by worker processes.

structlog records and plain ``logging`` records (httpx, dynaconf, ...) go
through the same processor chain and come out of one stderr handler, as
console lines or JSON. stdout is left to command output such as the usage
report.

Build identity is carried with ``structlog.contextvars``: after
``bind_build_context`` every line from that thread of execution is tagged
with the build hashed id and the worker pid, so lines from many workers can
be told apart once collected.
"""

import logging
import os
import sys
from typing import IO, TYPE_CHECKING, Any

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from testpulse.core.context import BuildContext

# HTTP client internals log every connection at DEBUG
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "urllib3",
    "urllib3.connectionpool",
)

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Drop the bookkeeping keys ProcessorFormatter always adds."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_chain(json_output: bool, stream: IO[str]) -> list[Any]:
    if json_output:
        return [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    isatty = getattr(stream, "isatty", None)
    colors = bool(isatty and isatty())
    return [_remove_internal_fields, structlog.dev.ConsoleRenderer(colors=colors)]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        json_output: One JSON object per line instead of console lines.
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        stream: Where log lines go; stderr by default. Console colours are
            used only when the stream is a terminal.

    Raises:
        ValueError: If ``level`` is not a known level name.
    """
    level_name = level.upper()
    if level_name not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}; use one of {sorted(_LEVELS)}")
    log_level = logging.getLevelName(level_name)
    out = stream if stream is not None else sys.stderr

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure logging; cached loggers would keep the old chain
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output, out), foreign_pre_chain=shared))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    # Never below WARNING, never looser than root
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(log_level, logging.WARNING))


def bind_build_context(context: "BuildContext") -> None:
    """Tag subsequent log lines with the build id and this worker's pid."""
    structlog.contextvars.bind_contextvars(
        build_hashed_id=context.build_hashed_id,
        worker_pid=os.getpid(),
    )


def clear_build_context() -> None:
    structlog.contextvars.unbind_contextvars("build_hashed_id", "worker_pid")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
