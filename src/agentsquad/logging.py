"""Logging setup for the CLI and background polls."""

from __future__ import annotations

import logging as py_logging
import sys
import tempfile
import threading
import time
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

from agentsquad.config import default_home

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
LOG_FILE_NAME = "agentsquad.log"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUPS = 3
_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"
_ROOT_LOGGER = "agentsquad"


def default_log_path(home: Path | None = None) -> Path:
    """Log file under the agentsquad home, or the temp dir when home is unresolvable."""
    try:
        base = home or default_home()
        base = base.expanduser()
    except RuntimeError:
        return Path(tempfile.gettempdir()) / LOG_FILE_NAME
    return (base / "logs" / LOG_FILE_NAME).resolve()


def resolve_level(level: str) -> int:
    return LOG_LEVELS.get(level.strip().upper(), py_logging.INFO)


def _file_handler(log_path: Path, formatter: py_logging.Formatter) -> py_logging.Handler | None:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError:
        return None
    handler.setLevel(py_logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    resolved = resolve_level(level)
    logger = py_logging.getLogger(_ROOT_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = py_logging.Formatter(_FORMAT)
    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setLevel(resolved)
    console.setFormatter(formatter)
    logger.addHandler(console)

    # The file handler records DEBUG regardless of the console level.
    logger.setLevel(resolved)
    if log_file:
        log_path = Path(log_file).expanduser().absolute()
        file_handler = _file_handler(log_path, formatter)
        if file_handler is None:
            logger.warning("Log file unavailable path=%s; logging to stderr only", log_path)
        else:
            logger.addHandler(file_handler)
            logger.setLevel(py_logging.DEBUG)

    logger.propagate = False
    return logger


class Every:
    """Allows an action at most once per ``interval`` seconds.

    Used to keep repeated poll failures from flooding the log.
    """

    def __init__(self, interval: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval
        self._clock = clock
        self._last: float | None = None
        self._lock = threading.Lock()

    def should_log(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last is not None and now - self._last < self._interval:
                return False
            self._last = now
            return True
