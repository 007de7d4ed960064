"""Logging for convoflow: a rich console handler, an optional rotating file."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig

ROOT_LOGGER_NAME = "convoflow"

console = Console()

_loggers: dict[str, logging.Logger] = {}
_current_level: int = logging.INFO


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Configure the root logger; calling it again replaces the previous handlers."""
    global _current_level

    config = config or LoggingConfig()
    level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        handler.close()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level)

    console_handler = RichHandler(
        console=console,
        show_path=config.show_path,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(config.format))
        root_logger.addHandler(file_handler)

    _current_level = level
    for named in _loggers.values():
        named.setLevel(level)

    get_logger("setup").info(
        "Logging configured: level=%s, file=%s", config.level, config.log_file or "-"
    )


def get_logger(name: str) -> logging.Logger:
    """Logger named ``convoflow.<name>``, created at the configured level."""
    if name not in _loggers:
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
        logger.setLevel(_current_level)
        _loggers[name] = logger
    return _loggers[name]


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log ``exc`` with its traceback, prefixed by ``context`` when given."""
    if context:
        logger.exception("%s: %s", context, exc)
    else:
        logger.exception("Exception occurred: %s", exc)
