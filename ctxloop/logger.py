"""Logging for ctxloop: quiet console, detailed rotating file tagged by session."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["setup_logger", "get_logger", "set_log_session"]

ROOT_LOGGER = "ctxloop"
DEFAULT_LOG_FILE = Path("~/.ctxloop/logs/agent.log").expanduser()
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(session_id)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3
NOISY_LOGGERS = ("litellm", "LiteLLM", "httpx", "httpcore", "openai")


class _SessionFilter(logging.Filter):
    """Stamps every record with the active session id."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__()
        self.session_id = session_id or "-"

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self.session_id
        return True


_session_filter = _SessionFilter()


def setup_logger(
    verbose: bool = False,
    log_file: Union[str, Path, bool, None] = None,
    session_id: Optional[str] = None,
    name: str = ROOT_LOGGER,
) -> logging.Logger:
    """Configure the package logger. Module loggers inherit its handlers.

    Args:
        verbose: console shows INFO and the file DEBUG; otherwise WARNING and INFO.
        log_file: ``None``/``True`` for ``~/.ctxloop/logs/agent.log``,
            ``False`` for no file, or a custom path.
        session_id: tag written on each file record.
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False
    set_log_session(session_id)

    console_level = logging.INFO if verbose else logging.WARNING
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)
    logger.setLevel(console_level)

    log_path = _resolve_log_path(log_file)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_level = logging.DEBUG if verbose else logging.INFO
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.addFilter(_session_filter)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)
        logger.setLevel(file_level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


def set_log_session(session_id: Optional[str]) -> None:
    """Switch the session tag, e.g. after ``--resume``."""
    _session_filter.session_id = session_id or "-"


def get_logger(name: str) -> logging.Logger:
    """Logger for a ctxloop module. Names outside the package are nested under it."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def _resolve_log_path(log_file: Union[str, Path, bool, None]) -> Path | None:
    if log_file is False:
        return None
    if log_file is None or log_file is True:
        return DEFAULT_LOG_FILE
    return Path(log_file).expanduser()
