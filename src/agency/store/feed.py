"""Change feed for the record store -- in-process subscribers plus Redis Streams.

Subscribers registered through ``RecordStore.subscribe`` are called after a
commit lands. Subscriber errors are logged and swallowed: a failing listener
must never turn a committed write into a reported failure.

When a RedisStreamPublisher is attached, every change is also appended to a
per-collection stream so other processes (other employees' consoles) can
follow the same partitions.

Stream key pattern: records:{collection}
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Sequence

import redis.asyncio as aioredis
import structlog

from src.agency.store.adapter import ChangeCallback, ChangeEvent, Unsubscribe

logger = structlog.get_logger(__name__)


class RedisStreamPublisher:
    """Append record changes to per-collection Redis Streams.

    Args:
        redis: Raw async Redis client.
        maxlen: Approximate stream length cap passed to XADD.
    """

    def __init__(self, redis: aioredis.Redis, maxlen: int = 10_000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    @staticmethod
    def stream_key(collection: str) -> str:
        return f"records:{collection}"

    async def publish(self, event: ChangeEvent) -> str:
        """Publish one change event; returns the Redis message ID."""
        data = {
            "collection": event.collection,
            "record_id": event.record_id,
            "kind": event.kind,
            "version": "" if event.version is None else str(event.version),
        }
        message_id = await self._redis.xadd(
            self.stream_key(event.collection),
            data,
            maxlen=self._maxlen,
            approximate=True,
        )
        return message_id

    async def read(
        self,
        collection: str,
        last_id: str = "$",
        count: int = 100,
        block: int = 5000,
    ) -> list[tuple[str, ChangeEvent]]:
        """Read changes after ``last_id`` from a collection's stream."""
        response = await self._redis.xread(
            {self.stream_key(collection): last_id}, count=count, block=block
        )
        events: list[tuple[str, ChangeEvent]] = []
        for _stream, messages in response or []:
            for message_id, data in messages:
                version = data.get("version") or None
                events.append(
                    (
                        message_id,
                        ChangeEvent(
                            collection=data["collection"],
                            record_id=data["record_id"],
                            kind=data["kind"],
                            version=int(version) if version else None,
                        ),
                    )
                )
        return events


class ChangeFeed:
    """Fan committed changes out to local subscribers and an optional stream."""

    def __init__(self, publisher: RedisStreamPublisher | None = None) -> None:
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)
        self._publisher = publisher

    def subscribe(self, collection: str, callback: ChangeCallback) -> Unsubscribe:
        self._subscribers[collection].append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers[collection].remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    async def dispatch(self, events: Sequence[ChangeEvent]) -> None:
        for event in events:
            for callback in list(self._subscribers.get(event.collection, ())):
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.warning(
                        "change_feed.subscriber_error",
                        collection=event.collection,
                        record_id=event.record_id,
                        exc_info=True,
                    )

            if self._publisher is not None:
                try:
                    await self._publisher.publish(event)
                except Exception as exc:
                    logger.warning(
                        "change_feed.publish_failed",
                        collection=event.collection,
                        record_id=event.record_id,
                        error=str(exc),
                    )
