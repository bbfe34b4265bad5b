"""PostgreSQL record store -- the single source of truth for every collection.

Each ``commit()`` runs inside one database transaction. Rows touched by an
update or delete are locked with SELECT ... FOR UPDATE before their version
is compared, so two actors racing on the same record serialize and the loser
sees a ConcurrentModificationError instead of silently overwriting.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Sequence
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

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
from src.agency.store.models import RecordModel

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"


def _is_unique_violation(exc: IntegrityError) -> bool:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    return code == UNIQUE_VIOLATION


def _to_record(model: RecordModel) -> StoredRecord:
    """Convert RecordModel to an immutable StoredRecord."""
    return StoredRecord(
        collection=model.collection,
        id=model.id,
        document=dict(model.document or {}),
        version=model.version,
    )


def _json_text(value: Any) -> str | None:
    """Render a filter value the way JSONB ->> renders it."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PostgresRecordStore(RecordStore):
    """RecordStore backed by a single JSONB ``records`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        feed: ChangeFeed used for subscriber fan-out after each commit.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed or ChangeFeed()

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, collection: str, record_id: str) -> StoredRecord | None:
        try:
            async for session in self._session_factory():
                model = await session.get(RecordModel, (collection, record_id))
                if model is None:
                    return None
                return _to_record(model)
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Read failed for {collection}/{record_id}") from exc
        return None

    async def query(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[StoredRecord]:
        stmt = select(RecordModel).where(RecordModel.collection == collection)
        for key, value in (filters or {}).items():
            column = RecordModel.document[key].astext
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_([_json_text(v) for v in value]))
            elif value is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == _json_text(value))

        try:
            async for session in self._session_factory():
                result = await session.execute(stmt)
                return [_to_record(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Query failed for {collection}") from exc
        return []

    # ── Writes ──────────────────────────────────────────────────────────────

    async def commit(self, ops: Sequence[WriteOp]) -> list[StoredRecord | None]:
        results: list[StoredRecord | None] = []
        events: list[ChangeEvent] = []

        try:
            async for session in self._session_factory():
                async with session.begin():
                    for op in ops:
                        if isinstance(op, CreateOp):
                            record = await self._apply_create(session, op)
                            events.append(
                                ChangeEvent(op.collection, record.id, "created", record.version)
                            )
                        elif isinstance(op, UpdateOp):
                            record = await self._apply_update(session, op)
                            events.append(
                                ChangeEvent(op.collection, record.id, "updated", record.version)
                            )
                        else:
                            await self._apply_delete(session, op)
                            record = None
                            events.append(ChangeEvent(op.collection, op.record_id, "deleted"))
                        results.append(record)
        except RecordStoreError:
            raise
        except IntegrityError as exc:
            raise RecordStoreError("Commit rejected by integrity constraint") from exc
        except SQLAlchemyError as exc:
            raise RecordStoreError("Commit failed") from exc

        logger.debug("record_store.committed", operations=len(ops))
        await self._feed.dispatch(events)
        return results

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        return self._feed.subscribe(collection, callback)

    # ── Operation helpers ───────────────────────────────────────────────────

    async def _lock(
        self, session: AsyncSession, collection: str, record_id: str
    ) -> RecordModel | None:
        stmt = (
            select(RecordModel)
            .where(RecordModel.collection == collection, RecordModel.id == record_id)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _apply_create(self, session: AsyncSession, op: CreateOp) -> StoredRecord:
        existing = await session.get(RecordModel, (op.collection, op.record_id))
        if existing is not None:
            raise RecordExistsError(op.collection, op.record_id)

        model = RecordModel(
            collection=op.collection,
            id=op.record_id,
            document=dict(op.document),
            version=1,
        )
        session.add(model)
        try:
            await session.flush()
        except IntegrityError as exc:
            # A concurrent insert of the same key won between get() and flush()
            if _is_unique_violation(exc):
                raise RecordExistsError(op.collection, op.record_id) from exc
            raise
        return _to_record(model)

    async def _apply_update(self, session: AsyncSession, op: UpdateOp) -> StoredRecord:
        model = await self._lock(session, op.collection, op.record_id)
        if model is None:
            raise RecordNotFoundError(op.collection, op.record_id)
        if op.expected_version is not None and model.version != op.expected_version:
            raise ConcurrentModificationError(
                op.collection, op.record_id, op.expected_version, model.version
            )

        # Assign a new dict so the JSONB column is flagged dirty
        model.document = {**(model.document or {}), **op.patch}
        model.version = model.version + 1
        await session.flush()
        return _to_record(model)

    async def _apply_delete(self, session: AsyncSession, op: DeleteOp) -> None:
        model = await self._lock(session, op.collection, op.record_id)
        if model is None:
            raise RecordNotFoundError(op.collection, op.record_id)
        if op.expected_version is not None and model.version != op.expected_version:
            raise ConcurrentModificationError(
                op.collection, op.record_id, op.expected_version, model.version
            )
        await session.delete(model)
        await session.flush()
