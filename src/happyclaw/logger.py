"""Process-wide structlog logger for HappyClaw.

``LOG_LEVEL`` is read from the environment at import time, before Settings
exists, so config loading itself can log. ``trace`` is accepted as a level
name: it logs like ``debug`` and additionally makes run logs verbose.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_VERBOSE_LEVELS = ("debug", "trace")


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").lower()
    if name == "trace":
        return logging.DEBUG
    return getattr(logging, name.upper(), logging.INFO)


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _level_from_env()

    # filter_by_level consults the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("happyclaw")


logger = _setup_logging()


def is_verbose() -> bool:
    """Whether run logs should include full request and output bodies."""
    return os.environ.get("LOG_LEVEL", "").lower() in _VERBOSE_LEVELS


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    # Ctrl-C from the CLI keeps the default traceback-free exit
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Unhandled exception in happyclaw", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
