"""Logging setup for the API process.

Existing ``logging.getLogger(__name__)`` call sites are routed through
structlog's ProcessorFormatter, so output is either JSON lines
(``LOG_FORMAT=json``, the default) or coloured console text.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

from .config import LoggingSettings, settings

_NOISE_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
)


def _build_processors(time_fmt: str) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        structlog.stdlib.ExtraAdder(),
    ]


def _make_formatter(renderer, processors: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=processors,
    )


def setup_logging(config: LoggingSettings | None = None) -> None:
    """Configure root logging from ``LoggingSettings``.

    Safe to call more than once; existing root handlers are replaced.
    """
    config = config or settings.logging

    if config.format == "json":
        processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_make_formatter(renderer, processors))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(
            _make_formatter(structlog.processors.JSONRenderer(), file_processors)
        )
        root.addHandler(file_handler)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
