"""structlog setup shared by the CLI and embedding applications.

Modules obtain loggers with ``structlog.get_logger(__name__)`` and log
snake_case events with key/value context.  Nothing is configured at import
time; call :func:`configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import EventDict, WrappedLogger

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = "apprune"
    return event_dict


def level_for(name: str) -> int:
    return _LEVELS.get(name.strip().lower(), logging.INFO)


def configure_logging(level: str = "info", json_format: bool = False, enable_colors: bool = False) -> None:
    """Route structlog through stdlib logging on stderr.

    ``json_format`` renders one JSON object per line; otherwise the console
    renderer is used.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level_for(level), force=True)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=enable_colors))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
