"""Record store -- partitioned, subscribable document storage.

Provides the abstract RecordStore interface, the PostgreSQL implementation,
and the change feed that notifies subscribers after each commit.

Collections:
- one per opportunity pool (see pipeline.schemas.POOL_COLLECTIONS)
- packages, projects (work units), payment_alerts, clients
"""

from src.agency.store.adapter import (
    ChangeEvent,
    ConcurrentModificationError,
    CreateOp,
    DeleteOp,
    RecordExistsError,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
    StoredRecord,
    UpdateOp,
    WriteOp,
)
from src.agency.store.feed import ChangeFeed, RedisStreamPublisher
from src.agency.store.postgres import PostgresRecordStore

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "ConcurrentModificationError",
    "CreateOp",
    "DeleteOp",
    "PostgresRecordStore",
    "RecordExistsError",
    "RecordNotFoundError",
    "RecordStore",
    "RecordStoreError",
    "RedisStreamPublisher",
    "StoredRecord",
    "UpdateOp",
    "WriteOp",
]
