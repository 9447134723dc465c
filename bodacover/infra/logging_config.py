"""
Logging configuration for the scheduler process.

- One log file per EAT business day, so a file lines up with the
  settlement windows of that day
- File names carry the time the handler was opened, which keeps the files
  of two processes started on the same day apart
- Console output always; file output unless log_dir is None
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "bodacover"
LOG_FILE_PREFIX = "bodacover"

# Same offset as the settlement calendar
BUSINESS_TZ = timezone(timedelta(hours=3), "EAT")


def _business_now() -> datetime:
    return datetime.now(BUSINESS_TZ)


class DailyRotatingFileHandler(logging.FileHandler):
    """
    File handler that switches files when the business day changes.

    Files are named <prefix>_<YYYYMMDD>_<HHMMSS>.log where HHMMSS is the
    opening time and stays fixed for the lifetime of the handler.
    """

    def __init__(
        self,
        log_dir: Union[str, Path] = "logs",
        encoding: str = "utf-8",
        prefix: str = LOG_FILE_PREFIX,
        clock: Callable[[], datetime] = _business_now,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self._clock = clock

        opened_at = clock()
        self._run_stamp = opened_at.strftime("%H%M%S")
        self._day = opened_at.strftime("%Y%m%d")

        super().__init__(self.path_for(self._day), mode="a", encoding=encoding)

    def path_for(self, day: str) -> str:
        return str(self.log_dir / f"{self.prefix}_{day}_{self._run_stamp}.log")

    def emit(self, record: logging.LogRecord) -> None:
        day = self._clock().strftime("%Y%m%d")
        if day != self._day:
            self._switch_to(day)
        super().emit(record)

    def _switch_to(self, day: str) -> None:
        self.acquire()
        try:
            if self.stream is not None:
                self.stream.close()
            self.baseFilename = self.path_for(day)
            self.stream = self._open()
            self._day = day
        finally:
            self.release()


def _attach(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Union[str, Path, None] = "logs",
) -> logging.Logger:
    """
    Configure the package logger and return it.

    Modules log through logging.getLogger(__name__), so the "bodacover"
    logger covers the scheduler, settlement and API layers. Calling this
    again replaces the handlers instead of adding more.

    Args:
        log_level: Logging level name; unknown names fall back to INFO
        log_dir: Directory for daily log files; None disables file logging

    Returns:
        The configured package logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    while logger.handlers:
        stale = logger.handlers[0]
        logger.removeHandler(stale)
        stale.close()

    _attach(logger, logging.StreamHandler(), level)

    log_file: Optional[str] = None
    if log_dir is not None:
        file_handler = DailyRotatingFileHandler(log_dir=log_dir)
        _attach(logger, file_handler, level)
        log_file = file_handler.baseFilename

    destination = f"console and {log_file}" if log_file else "console only"
    logger.info(f"Logging started - level: {logging.getLevelName(level)}, {destination}")
    return logger
