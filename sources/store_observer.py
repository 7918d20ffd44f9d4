# store_observer.py
"""
Observer interface for storage notifications.

Observers are handed to :class:`sensor_store.SensorStore` at construction
and called synchronously after the event.  Exceptions raised by an observer
are logged by the store and never reach the writer.
"""

from typing import Optional

from models import DataKind
from app_logger import logger


class StoreObserver:
    """Base observer – override the hooks you care about."""

    def on_stored(self, kind: DataKind, key: Optional[str]) -> None:
        """Called after every committed write."""

    def on_error(self, message: str) -> None:
        """Called for failures that have no awaiting caller."""


class LoggingObserver(StoreObserver):
    """Writes one log line per notification (the shell shows them with ``logs``)."""

    def on_stored(self, kind: DataKind, key: Optional[str]) -> None:
        logger.debug("[Storage] %s data stored for %s", kind.value, key or "environment")

    def on_error(self, message: str) -> None:
        logger.error("[Storage Error] %s", message)
