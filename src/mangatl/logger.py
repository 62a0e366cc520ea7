# src/mangatl/logger.py

import logging
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import Queue
from typing import Optional, Union

# Page status transitions are logged at PROGRESS, between INFO and WARNING.
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")


def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)


logging.Logger.progress = progress

_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_PROGRESS_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | [%(phase)s %(current)s/%(total)s %(pct)s%%] %(message)s"
)


class ExcludeLevelFilter(logging.Filter):
    """Drops records of one level, used to keep PROGRESS off the console."""

    def __init__(self, levelno: int):
        super().__init__()
        self.levelno = levelno

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno != self.levelno


class ProgressAwareFormatter(logging.Formatter):
    """
    Formats PROGRESS records with the page counters the pipeline attaches
    through ``extra``; any other record uses the plain file format.
    """

    def __init__(self):
        super().__init__(_FILE_FORMAT)
        self._progress = logging.Formatter(_PROGRESS_FILE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno == PROGRESS and hasattr(record, "phase"):
            return self._progress.format(record)
        return super().format(record)


def setup_logging(
    log_queue: Queue,
    *,
    level: int = logging.INFO,
    console: bool = True,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
) -> QueueListener:
    """
    Build the handlers that drain ``log_queue``.

    Args:
        log_queue: The queue the package logger writes to (see configure_logging).
        level: Level for console output. PROGRESS never reaches the console,
            the CLI shows it on the progress bar instead.
        console: Write records to stderr.
        file_path: Rotating log file; it also gets the PROGRESS trail.
        file_level: Level for the file, defaults to ``level``.

    Returns:
        A QueueListener instance. You must call .start() on it.
    """
    handlers = []

    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(fp, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
        fh.setLevel(file_level if file_level is not None else level)
        fh.setFormatter(ProgressAwareFormatter())
        handlers.append(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        ch.addFilter(ExcludeLevelFilter(PROGRESS))
        handlers.append(ch)

    return QueueListener(log_queue, *handlers, respect_handler_level=True)


def configure_logging(log_queue: Queue, level: int = logging.DEBUG) -> logging.Logger:
    """
    Routes the package logger through a QueueHandler so that code running on
    the event loop never blocks on handler I/O.
    """
    logger = logging.getLogger("mangatl")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(QueueHandler(log_queue))
    logger.propagate = False
    return logger
