# app_logger.py
"""
A small wrapper around the standard library `logging` module.
All parts of the program import `logger` from here, so we have a single
source of truth for log configuration.

The command shell owns stdout, so log lines never go to the console: they
land in an in‑memory ring buffer (read by the shell's ``logs`` command) and,
once ``configure_file_logging`` has been called, in a log file.
"""

import logging
from collections import deque
from pathlib import Path
from typing import Deque, Optional, Union

# ----------------------------------------------------------------------
# 1️⃣ Configure the project logger once
# ----------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DEFAULT_LOG_FILE = "sensor_feed.log"

logger = logging.getLogger("SensorFeedLogger")   # use a dedicated namespace
logger.setLevel(logging.DEBUG)         # handlers decide what they keep
logger.propagate = False               # prevent propagation to the root logger

# ----------------------------------------------------------------------
# 2️⃣ In‑memory handler – stores the last N log records for the shell
# ----------------------------------------------------------------------
MAX_LOG_RECORDS = 200   # keep the most recent 200 lines


class MemoryHandler(logging.Handler):
    """
    Simple handler that keeps the newest N formatted log strings in a
    bounded deque.  The shell can read `handler.buffer` at any time.
    """
    def __init__(self, capacity: int = MAX_LOG_RECORDS, level: int = logging.INFO):
        super().__init__(level)
        self.capacity = capacity
        self.buffer: Deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        msg = self.format(record)
        self.buffer.append(msg)


formatter = logging.Formatter(LOG_FORMAT)

# Create the handler, attach it to our logger, and expose it for the shell.
memory_handler = MemoryHandler()
memory_handler.setFormatter(formatter)
logger.addHandler(memory_handler)

# Export the buffer so the shell can read it without importing the whole logger.
log_buffer = memory_handler.buffer

_file_handler: Optional[logging.FileHandler] = None


def configure_file_logging(path: Union[str, Path] = DEFAULT_LOG_FILE) -> logging.FileHandler:
    """
    Attach (or replace) the DEBUG file handler.  Called once by ``main.py``;
    tests and library users get the memory buffer only.
    """
    global _file_handler
    if _file_handler is not None:
        logger.removeHandler(_file_handler)
        _file_handler.close()
    _file_handler = logging.FileHandler(path, encoding="utf-8")
    _file_handler.setLevel(logging.DEBUG)      # capture everything
    _file_handler.setFormatter(formatter)
    logger.addHandler(_file_handler)
    return _file_handler


def get_logger(name: str) -> logging.Logger:
    """Child logger under the project namespace, e.g. ``SensorFeedLogger.store``."""
    return logger.getChild(name)