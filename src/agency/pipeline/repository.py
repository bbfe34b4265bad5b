"""Opportunity repository -- pool-aware access to the record store.

Each live pool is its own store collection. Every lookup here reads the
store fresh; nothing is cached, so pool-membership decisions are always made
against current state.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.agency.pipeline.activity import append
from src.agency.pipeline.schemas import (
    LIVE_POOLS,
    POOL_COLLECTIONS,
    ActivityEntry,
    Opportunity,
    OpportunityCreate,
    Pool,
)
from src.agency.store.adapter import (
    ConcurrentModificationError,
    RecordNotFoundError,
    RecordStore,
)

logger = structlog.get_logger(__name__)


def collection_for(pool: Pool) -> str:
    try:
        return POOL_COLLECTIONS[pool]
    except KeyError:
        raise ValueError(f"{pool.value} is not a live pool") from None


class OpportunityRepository:
    """Reads and writes opportunities across their pool collections.

    Args:
        store: Record store holding one collection per live pool.
        conflict_retries: Attempts for version-checked activity appends.
    """

    def __init__(self, store: RecordStore, conflict_retries: int = 5) -> None:
        self._store = store
        self._conflict_retries = conflict_retries

    # ── Reads ───────────────────────────────────────────────────────────────

    async def locate(self, opportunity_id: str) -> list[Opportunity]:
        """Every live pool copy of ``opportunity_id``, read fresh.

        Returns a list rather than a single record so callers can detect a
        membership violation instead of silently picking one copy.
        """
        records = await asyncio.gather(
            *(self._store.get(collection_for(pool), opportunity_id) for pool in LIVE_POOLS)
        )
        return [Opportunity.from_record(r) for r in records if r is not None]

    async def list_pool(self, pool: Pool) -> list[Opportunity]:
        records = await self._store.query(collection_for(pool))
        opportunities = [Opportunity.from_record(r) for r in records]
        return sorted(opportunities, key=lambda o: o.created_at, reverse=True)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create(self, data: OpportunityCreate) -> Opportunity:
        now = datetime.now(timezone.utc)
        opportunity = Opportunity(
            id=str(uuid.uuid4()),
            display_name=data.display_name,
            organization=data.organization,
            contact_methods=data.contact_methods,
            value=data.value,
            pool=Pool.PROSPECT,
            score=0,
            created_at=now,
            pool_entered_at=now,
        )
        record = await self._store.create(
            collection_for(Pool.PROSPECT), opportunity.to_document(), opportunity.id
        )
        logger.info("opportunity.created", opportunity_id=record.id)
        return Opportunity.from_record(record)

    async def save(self, opportunity: Opportunity) -> Opportunity:
        """Write ``opportunity`` back to its pool, version-checked."""
        record = await self._store.update(
            collection_for(opportunity.pool),
            opportunity.id,
            opportunity.to_document(),
            expected_version=opportunity.version,
        )
        return Opportunity.from_record(record)

    async def relocate(self, opportunity: Opportunity, source: Pool) -> Opportunity:
        """Move ``opportunity`` from ``source`` into its new pool in one commit.

        The delete is checked against the version read from ``source``.
        """
        record = await self._store.relocate(
            opportunity.id,
            collection_for(source),
            collection_for(opportunity.pool),
            opportunity.to_document(),
            expected_version=opportunity.version,
        )
        return Opportunity.from_record(record)

    async def delete(self, opportunity: Opportunity) -> None:
        await self._store.delete(
            collection_for(opportunity.pool),
            opportunity.id,
            expected_version=opportunity.version,
        )

    async def append_activity(
        self,
        opportunity_id: str,
        entry: ActivityEntry,
        extra: dict[str, Any] | None = None,
    ) -> Opportunity | None:
        """Append ``entry`` wherever the record lives now.

        Re-locates and retries when a concurrent write wins the version
        check. Returns None if the record has left the pipeline.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._conflict_retries),
            wait=wait_exponential(multiplier=0.01, max=0.2),
            retry=retry_if_exception_type((ConcurrentModificationError, RecordNotFoundError)),
            reraise=True,
        ):
            with attempt:
                matches = await self.locate(opportunity_id)
                if len(matches) != 1:
                    return None
                current = matches[0]
                updated = current.model_copy(
                    update={"activities": append(current.activities, entry), **(extra or {})}
                )
                return await self.save(updated)
        return None
