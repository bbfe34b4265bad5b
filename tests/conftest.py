"""Shared test doubles and fixtures.

Provides:
- InMemoryRecordStore: atomic, version-checked RecordStore without a database
- FakeContactSync / RecordingEmitter: controllable external collaborators
- Fixtures wiring the stage machine and billing services to the doubles
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from src.agency.billing.alerts import StoreBillingAlertSink
from src.agency.billing.engine import MilestoneTriggerEngine
from src.agency.billing.packages import PackageService
from src.agency.billing.payments import PaymentsService
from src.agency.billing.work_units import WorkUnitService
from src.agency.pipeline.machine import OpportunityStageMachine
from src.agency.pipeline.repository import OpportunityRepository
from src.agency.pipeline.schemas import CustomerCreate
from src.agency.services.customers import (
    CustomerEmitter,
    CustomerEmitterError,
    customer_id_for,
)
from src.agency.services.gsuite.contacts import (
    ContactPayload,
    ContactSync,
    ContactSyncError,
)
from src.agency.store.adapter import (
    ChangeCallback,
    ChangeEvent,
    ConcurrentModificationError,
    CreateOp,
    DeleteOp,
    RecordExistsError,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
    StoredRecord,
    Unsubscribe,
    UpdateOp,
    WriteOp,
)
from src.agency.store.feed import ChangeFeed


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryRecordStore(RecordStore):
    """In-memory RecordStore for testing without a database.

    Every read yields to the event loop once, so concurrent callers
    interleave the way they would against a real store. ``hidden_from_query``
    holds record ids that ``query`` does not return yet (visibility lag).
    ``fail_commit`` makes matching batches raise RecordStoreError.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, StoredRecord]] = defaultdict(dict)
        self._feed = ChangeFeed()
        self.hidden_from_query: set[str] = set()
        self.fail_commit: Callable[[Sequence[WriteOp]], bool] | None = None
        self.commits: list[list[WriteOp]] = []

    async def get(self, collection: str, record_id: str) -> StoredRecord | None:
        await asyncio.sleep(0)
        record = self._data[collection].get(record_id)
        return copy.deepcopy(record) if record else None

    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[StoredRecord]:
        await asyncio.sleep(0)
        results = []
        for record in self._data[collection].values():
            if record.id in self.hidden_from_query:
                continue
            if _matches(record.document, filters or {}):
                results.append(copy.deepcopy(record))
        return results

    async def commit(self, ops: Sequence[WriteOp]) -> list[StoredRecord | None]:
        if self.fail_commit is not None and self.fail_commit(ops):
            raise RecordStoreError("simulated store outage")

        staged: dict[str, dict[str, StoredRecord]] = {
            name: dict(records) for name, records in self._data.items()
        }
        results: list[StoredRecord | None] = []
        events: list[ChangeEvent] = []

        for op in ops:
            records = staged.setdefault(op.collection, {})
            if isinstance(op, CreateOp):
                if op.record_id in records:
                    raise RecordExistsError(op.collection, op.record_id)
                record = StoredRecord(op.collection, op.record_id, copy.deepcopy(op.document), 1)
                records[op.record_id] = record
                results.append(copy.deepcopy(record))
                events.append(ChangeEvent(op.collection, op.record_id, "created", 1))
            elif isinstance(op, UpdateOp):
                existing = records.get(op.record_id)
                if existing is None:
                    raise RecordNotFoundError(op.collection, op.record_id)
                _check_version(op.collection, op.record_id, op.expected_version, existing)
                document = {**existing.document, **copy.deepcopy(op.patch)}
                record = StoredRecord(
                    op.collection, op.record_id, document, existing.version + 1
                )
                records[op.record_id] = record
                results.append(copy.deepcopy(record))
                events.append(ChangeEvent(op.collection, op.record_id, "updated", record.version))
            elif isinstance(op, DeleteOp):
                existing = records.get(op.record_id)
                if existing is None:
                    raise RecordNotFoundError(op.collection, op.record_id)
                _check_version(op.collection, op.record_id, op.expected_version, existing)
                del records[op.record_id]
                results.append(None)
                events.append(ChangeEvent(op.collection, op.record_id, "deleted"))

        self._data = defaultdict(dict, staged)
        self.commits.append(list(ops))
        await self._feed.dispatch(events)
        return results

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        return self._feed.subscribe(collection, callback)

    # ── Test helpers ────────────────────────────────────────────────────────

    def ids(self, collection: str) -> set[str]:
        return set(self._data[collection])

    def document(self, collection: str, record_id: str) -> dict[str, Any]:
        return self._data[collection][record_id].document


def _matches(document: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        value = document.get(key)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _check_version(
    collection: str, record_id: str, expected: int | None, existing: StoredRecord
) -> None:
    if expected is not None and expected != existing.version:
        raise ConcurrentModificationError(collection, record_id, expected, existing.version)


class FakeContactSync(ContactSync):
    """ContactSync double: records calls, optionally fails or stalls."""

    def __init__(self, resource_name: str = "people/c100", fail: bool = False) -> None:
        self.resource_name = resource_name
        self.fail = fail
        self.delay = 0.0
        self.calls: list[tuple[str, ContactPayload]] = []

    async def upsert_contact(self, token: str, contact: ContactPayload) -> str:
        self.calls.append((token, contact))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ContactSyncError("quota exceeded")
        return contact.external_id or self.resource_name


class RecordingEmitter(CustomerEmitter):
    """CustomerEmitter double keyed by idempotency key; repeat keys overwrite."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.customers: dict[str, CustomerCreate] = {}
        self.calls = 0

    async def create_customer(self, fields: CustomerCreate, idempotency_key: str) -> str:
        self.calls += 1
        if self.fail:
            raise CustomerEmitterError("clients collection unavailable")
        self.customers[idempotency_key] = fields
        return customer_id_for(idempotency_key)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def contact_sync() -> FakeContactSync:
    return FakeContactSync()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def repository(store) -> OpportunityRepository:
    return OpportunityRepository(store, conflict_retries=5)


@pytest.fixture
def machine(repository, emitter, contact_sync) -> OpportunityStageMachine:
    return OpportunityStageMachine(
        repository=repository,
        emitter=emitter,
        contact_sync=contact_sync,
        sync_timeout=0.2,
        conflict_retries=5,
    )


@pytest.fixture
def sink(store) -> StoreBillingAlertSink:
    return StoreBillingAlertSink(store, conflict_retries=5)


@pytest.fixture
def engine(store, sink) -> MilestoneTriggerEngine:
    return MilestoneTriggerEngine(store, sink, conflict_retries=5)


@pytest.fixture
def package_service(store, sink) -> PackageService:
    return PackageService(store, sink)


@pytest.fixture
def work_unit_service(store, engine) -> WorkUnitService:
    return WorkUnitService(store, engine, conflict_retries=5)


@pytest.fixture
def payments_service(sink) -> PaymentsService:
    return PaymentsService(sink)
