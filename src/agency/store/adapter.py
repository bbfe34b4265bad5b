"""Record store abstract base class -- the partitioned document store interface.

Every collection ("pool" for opportunities, or a plain collection such as
packages and payment alerts) holds JSON documents addressed by id. Each
document carries a store-maintained ``version`` that increments on every
write, so callers can make writes conditional on what they last read.

All multi-record mutations go through ``commit()``, which applies a batch of
write operations atomically: either every operation lands or none does. Pool
moves are expressed as a delete + create pair inside one commit, so a record
is never observable in zero or two pools.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

# ── Errors ──────────────────────────────────────────────────────────────────


class RecordStoreError(Exception):
    """Underlying store read or write failed."""


class RecordNotFoundError(RecordStoreError):
    """Raised when an update or delete targets a record that does not exist."""

    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Record not found: {collection}/{record_id}")


class RecordExistsError(RecordStoreError):
    """Raised when a create targets an id that is already taken."""

    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Record already exists: {collection}/{record_id}")


class ConcurrentModificationError(RecordStoreError):
    """Raised when a version-checked write finds the record has moved on."""

    def __init__(
        self,
        collection: str,
        record_id: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.collection = collection
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {collection}/{record_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


# ── Records and write operations ────────────────────────────────────────────


@dataclass(frozen=True)
class StoredRecord:
    """A document as read from the store."""

    collection: str
    id: str
    document: dict[str, Any]
    version: int


@dataclass(frozen=True)
class CreateOp:
    collection: str
    document: dict[str, Any]
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class UpdateOp:
    """Shallow-merge ``patch`` into the stored document's top-level keys."""

    collection: str
    record_id: str
    patch: dict[str, Any]
    expected_version: int | None = None


@dataclass(frozen=True)
class DeleteOp:
    collection: str
    record_id: str
    expected_version: int | None = None


WriteOp = Union[CreateOp, UpdateOp, DeleteOp]


@dataclass(frozen=True)
class ChangeEvent:
    """Notification delivered to subscribers after a commit lands."""

    collection: str
    record_id: str
    kind: str  # "created" | "updated" | "deleted"
    version: int | None = None


ChangeCallback = Callable[[ChangeEvent], Union[Awaitable[None], None]]
Unsubscribe = Callable[[], None]


# ── Store interface ─────────────────────────────────────────────────────────


class RecordStore(ABC):
    """Abstract interface for the partitioned, subscribable document store.

    Implementations must provide read-after-write consistency for the
    calling actor. ``query`` is an equality filter over top-level document
    keys; a list value means "any of".
    """

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> StoredRecord | None:
        """Fetch one record, or None if it is not in the collection."""
        ...

    @abstractmethod
    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[StoredRecord]:
        """List records in a collection matching the equality filters."""
        ...

    @abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> list[StoredRecord | None]:
        """Apply all operations atomically.

        Returns one entry per operation: the resulting record for creates
        and updates, None for deletes.

        Raises:
            RecordNotFoundError: An update/delete target does not exist.
            RecordExistsError: A create target id is already taken.
            ConcurrentModificationError: An expected_version did not match.
            RecordStoreError: Any other storage failure.
        """
        ...

    @abstractmethod
    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        """Register a callback for committed changes in a collection."""
        ...

    # ── Single-record conveniences built on commit() ────────────────────────

    async def create(
        self,
        collection: str,
        document: dict[str, Any],
        record_id: str | None = None,
    ) -> StoredRecord:
        op = (
            CreateOp(collection, document, record_id)
            if record_id
            else CreateOp(collection, document)
        )
        (record,) = await self.commit([op])
        assert record is not None
        return record

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: dict[str, Any],
        expected_version: int | None = None,
    ) -> StoredRecord:
        (record,) = await self.commit(
            [UpdateOp(collection, record_id, patch, expected_version)]
        )
        assert record is not None
        return record

    async def delete(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None = None,
    ) -> None:
        await self.commit([DeleteOp(collection, record_id, expected_version)])

    async def relocate(
        self,
        record_id: str,
        source: str,
        target: str,
        document: dict[str, Any],
        expected_version: int | None = None,
    ) -> StoredRecord:
        """Move a record between collections in a single commit, keeping its id."""
        _, record = await self.commit(
            [
                DeleteOp(source, record_id, expected_version),
                CreateOp(target, document, record_id),
            ]
        )
        assert record is not None
        return record
