"""Structured logging configuration for hubmirror.

Uses structlog for structured, context-rich logging. Console output goes
to stderr so that command output on stdout stays machine-readable.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from hubmirror.container import AppContext

LOG_FILE_NAME = "hubmirror.log"

# Chatty third-party loggers kept at WARNING unless running at DEBUG.
_QUIET_LOGGERS = ("urllib3", "requests")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Path | None = None,
    colors: bool = True,
) -> None:
    """Configure structured logging.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_output: Render events as JSON lines
        log_file: Append to this file instead of stderr
        colors: Colorize console output
    """
    stream: TextIO = sys.stderr
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        stream = open(log_file, "a")  # noqa: SIM115

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=numeric_level,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors = _shared_processors()
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


def configure_from_context(
    context: AppContext,
    verbose: bool = False,
    json_output: bool | None = None,
) -> None:
    """Configure logging from the application context.

    Command-line flags win over the context: ``verbose`` forces DEBUG and
    ``json_output`` overrides ``context.log_json`` when given.
    """
    level = "DEBUG" if verbose else context.log_level
    as_json = context.log_json if json_output is None else json_output
    log_file = context.log_dir / LOG_FILE_NAME if context.log_dir is not None else None

    configure_logging(
        level=level,
        json_output=as_json,
        log_file=log_file,
        colors=not as_json and log_file is None and sys.stderr.isatty(),
    )


# Usage:
# from hubmirror.logging_config import get_logger
#
# logger = get_logger(__name__)
#
# logger.info("model_upserted",
#             model_id="openai-community/gpt2",
#             created=False,
#             siblings=12)
