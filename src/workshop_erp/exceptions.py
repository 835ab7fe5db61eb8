"""Exception types raised by the workshop persistence layer.

Domain failures derive from :class:`WorkshopError` so callers can catch them
as a group. Infrastructure errors (``OSError``, workbook load failures, lock
acquisition problems) are never wrapped here and reach the caller unchanged.
"""

from __future__ import annotations

from typing import Optional

from .constants import Collection


class WorkshopError(Exception):
    """Base class for every domain error raised by this package."""


class NotFoundError(WorkshopError):
    """Raised when an identifier does not exist in its collection."""

    def __init__(self, collection: Collection, record_id: int) -> None:
        self.collection = Collection(collection)
        self.record_id = record_id
        super().__init__(f"{self.collection.value} record {record_id} not found")


class ValidationFailure(WorkshopError):
    """Raised when a record fails the structural checks enforced on write."""


class CascadeFailure(WorkshopError):
    """Raised when a cascade delete is aborted; nothing was removed."""

    def __init__(self, collection: Collection, record_id: int, reason: str) -> None:
        self.collection = Collection(collection)
        self.record_id = record_id
        super().__init__(
            f"Cascade delete of {self.collection.value} record {record_id} failed: {reason}"
        )


class SnapshotFailure(WorkshopError):
    """Raised when a snapshot of the store could not be written."""


class RetentionFailure(WorkshopError):
    """Raised when old snapshots could not be pruned."""


class RestoreFailure(WorkshopError):
    """Raised when a snapshot could not be restored; the live store is untouched."""


class RecordDecodeError(WorkshopError):
    """Raised when a stored document cannot be turned back into a record."""

    def __init__(self, collection: Collection, record_id: Optional[int], reason: str) -> None:
        self.collection = Collection(collection)
        self.record_id = record_id
        super().__init__(
            f"Cannot decode {self.collection.value} record {record_id}: {reason}"
        )


__all__ = [
    "WorkshopError",
    "NotFoundError",
    "ValidationFailure",
    "CascadeFailure",
    "SnapshotFailure",
    "RetentionFailure",
    "RestoreFailure",
    "RecordDecodeError",
]
