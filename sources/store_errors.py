# store_errors.py
"""
Errors raised by :class:`sensor_store.SensorStore`.

Every error carries the operation that failed, the key it was working on
(if any) and the underlying cause, so a higher layer can log or retry.
The store itself never retries.
"""

from typing import Optional


class StoreError(Exception):
    """Base class of all store failures."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 key: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.cause = cause

    def __str__(self) -> str:
        text = super().__str__()
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.key:
            context.append(f"key={self.key}")
        if self.cause is not None:
            context.append(f"cause={self.cause}")
        return f"{text} ({', '.join(context)})" if context else text


class NotConnected(StoreError):
    """Operation attempted before ``initialize()`` or after ``close()``."""


class StorageWriteFailed(StoreError):
    """Engine-level failure: disk, corruption, constraint, unwritable location."""


class TableNotFound(StoreError):
    """The operation needs an existing table for the key and there is none."""


class ExportWriteFailed(StoreError):
    """The export destination could not be written."""
