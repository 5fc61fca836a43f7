"""Logging setup for imageforge.

Modules log through ``logging.getLogger(__name__)``; this module only wires
handlers once, at the command-line entry point.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``imageforge`` logger hierarchy.

    Args:
        level: Logging level name.
        log_file: Optional file appended to with every record.
        console: Rich console to log to (stderr by default).

    Returns:
        The configured ``imageforge`` package logger.
    """
    root = logging.getLogger("imageforge")
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(level)
    root.addHandler(rich_handler)

    if log_file is not None:
        root.addHandler(attach_file_log(log_file, level=level, logger=None))

    return root


def attach_file_log(
    log_file: Path,
    level: str | int = "DEBUG",
    logger: logging.Logger | None = None,
) -> logging.FileHandler:
    """Create an appending file handler, optionally attaching it.

    Args:
        log_file: File to append to; parent directories are created.
        level: Handler level.
        logger: Logger to attach to; ``None`` only creates the handler.

    Returns:
        The file handler (caller detaches it with ``detach_file_log``).
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if logger is not None:
        logger.addHandler(handler)
    return handler


def detach_file_log(handler: logging.Handler, logger: logging.Logger) -> None:
    """Detach and close a handler created by ``attach_file_log``."""
    logger.removeHandler(handler)
    handler.close()


__all__ = ["LOG_FORMAT", "attach_file_log", "configure_logging", "detach_file_log"]
