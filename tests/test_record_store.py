"""Tests for the record store: change feed, Redis stream publisher, and
the PostgreSQL store's commit semantics against a mocked AsyncSession.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.agency.store.adapter import (
    ChangeEvent,
    ConcurrentModificationError,
    CreateOp,
    DeleteOp,
    RecordExistsError,
    RecordNotFoundError,
    RecordStoreError,
    UpdateOp,
)
from src.agency.store.feed import ChangeFeed, RedisStreamPublisher
from src.agency.store.models import RecordModel
from src.agency.store.postgres import PostgresRecordStore, _json_text


class _UniqueViolation(Exception):
    pgcode = "23505"


def _session_factory(session):
    async def _sessions():
        yield session

    return _sessions


def _mock_session(locked: RecordModel | None = None, existing: RecordModel | None = None):
    session = MagicMock()
    session.get = AsyncMock(return_value=existing)
    result = MagicMock()
    result.scalar_one_or_none.return_value = locked
    session.execute = AsyncMock(return_value=result)
    session.flush = AsyncMock()
    session.delete = AsyncMock()
    return session


def _model(version: int = 3, **document) -> RecordModel:
    return RecordModel(
        collection="packages", id="pkg-1", document=document or {"status": "active"}, version=version
    )


# ── Change Feed ──────────────────────────────────────────────────────────────


class TestChangeFeed:
    async def test_dispatches_to_sync_and_async_subscribers(self):
        feed = ChangeFeed()
        seen_sync: list[ChangeEvent] = []
        seen_async: list[ChangeEvent] = []

        async def _async_cb(event):
            seen_async.append(event)

        feed.subscribe("packages", seen_sync.append)
        feed.subscribe("packages", _async_cb)
        feed.subscribe("clients", seen_sync.append)

        event = ChangeEvent("packages", "pkg-1", "updated", 2)
        await feed.dispatch([event])

        assert seen_sync == [event]
        assert seen_async == [event]

    async def test_failing_subscriber_does_not_stop_others(self):
        feed = ChangeFeed()
        seen: list[ChangeEvent] = []

        def _broken(event):
            raise RuntimeError("listener bug")

        feed.subscribe("packages", _broken)
        feed.subscribe("packages", seen.append)

        await feed.dispatch([ChangeEvent("packages", "pkg-1", "created", 1)])

        assert len(seen) == 1

    async def test_unsubscribe_stops_delivery(self):
        feed = ChangeFeed()
        seen: list[ChangeEvent] = []
        unsubscribe = feed.subscribe("packages", seen.append)

        unsubscribe()
        unsubscribe()
        await feed.dispatch([ChangeEvent("packages", "pkg-1", "created", 1)])

        assert seen == []

    async def test_publishes_every_event(self):
        publisher = MagicMock()
        publisher.publish = AsyncMock(return_value="1-0")
        feed = ChangeFeed(publisher=publisher)
        events = [
            ChangeEvent("active_deals", "opp-1", "deleted"),
            ChangeEvent("nurtured_leads", "opp-1", "created", 1),
        ]

        await feed.dispatch(events)

        assert [c.args[0] for c in publisher.publish.call_args_list] == events

    async def test_publish_failure_is_swallowed(self):
        publisher = MagicMock()
        publisher.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        feed = ChangeFeed(publisher=publisher)

        await feed.dispatch([ChangeEvent("packages", "pkg-1", "created", 1)])

        publisher.publish.assert_awaited_once()


class TestRedisStreamPublisher:
    async def test_publish_uses_collection_stream(self):
        redis = MagicMock()
        redis.xadd = AsyncMock(return_value="1700000000000-0")
        publisher = RedisStreamPublisher(redis, maxlen=500)

        message_id = await publisher.publish(ChangeEvent("packages", "pkg-1", "updated", 4))

        assert message_id == "1700000000000-0"
        redis.xadd.assert_awaited_once_with(
            "records:packages",
            {"collection": "packages", "record_id": "pkg-1", "kind": "updated", "version": "4"},
            maxlen=500,
            approximate=True,
        )

    async def test_read_parses_events(self):
        redis = MagicMock()
        redis.xread = AsyncMock(
            return_value=[
                (
                    "records:packages",
                    [
                        ("1-0", {"collection": "packages", "record_id": "a", "kind": "created", "version": "1"}),
                        ("2-0", {"collection": "packages", "record_id": "b", "kind": "deleted", "version": ""}),
                    ],
                )
            ]
        )
        publisher = RedisStreamPublisher(redis)

        events = await publisher.read("packages", last_id="0")

        assert events == [
            ("1-0", ChangeEvent("packages", "a", "created", 1)),
            ("2-0", ChangeEvent("packages", "b", "deleted", None)),
        ]

    async def test_read_handles_timeout(self):
        redis = MagicMock()
        redis.xread = AsyncMock(return_value=None)
        assert await RedisStreamPublisher(redis).read("packages") == []


# ── PostgreSQL Record Store ──────────────────────────────────────────────────


class TestPostgresRecordStore:
    def test_json_text_matches_jsonb_rendering(self):
        assert _json_text(True) == "true"
        assert _json_text(False) == "false"
        assert _json_text(None) is None
        assert _json_text("Finished") == "Finished"
        assert _json_text(3) == "3"

    async def test_get_returns_record(self):
        session = _mock_session(existing=_model())
        store = PostgresRecordStore(_session_factory(session))

        record = await store.get("packages", "pkg-1")

        assert record.id == "pkg-1"
        assert record.version == 3
        assert record.document == {"status": "active"}

    async def test_get_wraps_driver_errors(self):
        session = _mock_session()
        session.get = AsyncMock(side_effect=SQLAlchemyError("connection reset"))
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(RecordStoreError):
            await store.get("packages", "pkg-1")

    async def test_update_bumps_version_and_notifies(self):
        model = _model(version=3, status="active", received_amount=0)
        session = _mock_session(locked=model)
        store = PostgresRecordStore(_session_factory(session))
        seen: list[ChangeEvent] = []
        store.subscribe("packages", seen.append)

        (record,) = await store.commit(
            [UpdateOp("packages", "pkg-1", {"received_amount": 500}, expected_version=3)]
        )

        assert record.version == 4
        assert record.document == {"status": "active", "received_amount": 500}
        assert seen == [ChangeEvent("packages", "pkg-1", "updated", 4)]

    async def test_update_with_stale_version_conflicts(self):
        session = _mock_session(locked=_model(version=5))
        store = PostgresRecordStore(_session_factory(session))
        seen: list[ChangeEvent] = []
        store.subscribe("packages", seen.append)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await store.commit([UpdateOp("packages", "pkg-1", {"x": 1}, expected_version=4)])

        assert exc_info.value.actual_version == 5
        assert seen == []

    async def test_update_missing_record(self):
        session = _mock_session(locked=None)
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(RecordNotFoundError):
            await store.commit([UpdateOp("packages", "pkg-1", {"x": 1})])

    async def test_create_existing_id_is_rejected(self):
        session = _mock_session(existing=_model())
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(RecordExistsError):
            await store.commit([CreateOp("packages", {"status": "active"}, "pkg-1")])

    async def test_relocate_deletes_then_creates(self):
        session = _mock_session(locked=_model(version=2))
        store = PostgresRecordStore(_session_factory(session))
        seen: list[ChangeEvent] = []
        store.subscribe("packages", seen.append)
        store.subscribe("archive", seen.append)

        record = await store.relocate("pkg-1", "packages", "archive", {"status": "done"}, 2)

        assert record.collection == "archive"
        assert record.version == 1
        session.delete.assert_awaited_once()
        session.add.assert_called_once()
        assert [e.kind for e in seen] == ["deleted", "created"]

    async def test_delete_with_stale_version_conflicts(self):
        session = _mock_session(locked=_model(version=2))
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(ConcurrentModificationError):
            await store.commit([DeleteOp("packages", "pkg-1", expected_version=1)])

        session.delete.assert_not_awaited()

    async def test_integrity_error_is_wrapped(self):
        session = _mock_session()
        session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(RecordStoreError, match="integrity"):
            await store.commit([CreateOp("packages", {}, "pkg-2")])

    async def test_unique_violation_on_insert_is_record_exists(self):
        """A racing insert of the same key surfaces as RecordExistsError, not a generic failure."""
        session = _mock_session()
        session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, _UniqueViolation("duplicate key"))
        )
        store = PostgresRecordStore(_session_factory(session))

        with pytest.raises(RecordExistsError) as excinfo:
            await store.commit([CreateOp("clients", {}, "opp-o-1")])

        assert excinfo.value.collection == "clients"
        assert excinfo.value.record_id == "opp-o-1"
