"""Process-wide logging configuration for long-running commands."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from declutter.config.models import LoggingSettings

LOG_FILENAME = "declutter.log"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_MARKER = "_declutter_handler"


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(
    settings: LoggingSettings,
    log_dir: Path,
    *,
    console: Console | None = None,
    level_override: str | None = None,
) -> Path:
    """Install a rotating file handler and a rich console handler on the root logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        settings: Level and rotation settings.
        log_dir: Directory receiving ``declutter.log``.
        console: Console used by the rich handler (stderr by default).
        level_override: Level name taking precedence over ``settings.level``.

    Returns:
        Path: Location of the active log file.
    """
    level = _resolve_level(level_override or settings.level)
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILENAME
    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max(1, settings.max_size_mb) * 1024 * 1024,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )

    for handler in (file_handler, console_handler):
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("watchdog").setLevel(max(level, logging.INFO))
    return log_path


__all__ = ["configure_logging", "LOG_FILENAME"]
