"""Logging setup shared by the command-line entry points."""

from __future__ import annotations

import logging
import os
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import IO, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DIR_ENV = "ASC_LOG_DIR"

_TRUTHY = {"1", "true", "yes", "on", "y"}


class DailyLogFileHandler(logging.Handler):
    """Append records to ``<prefix>_YYYY-MM-DD.log``, switching files at midnight."""

    def __init__(self, directory: Path, prefix: str = "asc", encoding: str = "utf-8"):
        super().__init__()
        self.directory = directory
        self.prefix = prefix
        self.encoding = encoding
        self._day: Optional[date] = None
        self._stream: Optional[IO[str]] = None
        self._lock = threading.Lock()
        self.directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, prefix: str) -> Optional["DailyLogFileHandler"]:
        """Build a handler for ``ASC_LOG_DIR``, or return ``None`` when it is unset."""
        directory = os.getenv(LOG_DIR_ENV, "").strip()
        if not directory:
            return None
        return cls(Path(directory).expanduser(), prefix=prefix)

    def log_path(self, day: date) -> Path:
        return self.directory / f"{self.prefix}_{day.isoformat()}.log"

    def _stream_for(self, day: date) -> IO[str]:
        if self._stream is None or day != self._day:
            if self._stream is not None:
                self._stream.close()
            self._stream = open(self.log_path(day), "a", encoding=self.encoding)
            self._day = day
        return self._stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            with self._lock:
                stream = self._stream_for(datetime.now().date())
                stream.write(line + "\n")
                stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        super().close()


def debug_enabled() -> bool:
    return os.getenv("ASC_DEBUG", "").strip().lower() in _TRUTHY


def resolve_log_level(verbose: bool = False) -> int:
    if verbose or debug_enabled():
        return logging.DEBUG
    level_name = os.getenv("LOG_LEVEL", "WARNING").strip().upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(verbose: bool = False, prog: str = "asc") -> logging.Logger:
    """Configure the root logger for a CLI run and return it.

    Log files, when ``ASC_LOG_DIR`` is set, are named after ``prog``.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_log_level(verbose))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    file_handler = DailyLogFileHandler.from_env(prog)
    if file_handler is not None:
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # urllib3 debug lines carry unredacted presigned URLs
    logging.getLogger("urllib3").setLevel(max(root_logger.level, logging.WARNING))
    return root_logger
