"""Opportunity stage machine -- pool membership, stage, score, and side effects.

Every transition re-reads the record from all live pools, plans the whole
change in memory, then persists it as a single version-checked write (a
same-pool update, or a delete + create relocate in one commit). A concurrent
writer that lands first forces a fresh read and re-plan.

Side effects:
- Proposal Sent / Negotiation: background contact sync with a bounded
  timeout. Its outcome is appended as a separate ``contact_sync`` activity;
  failures never touch the transition.
- Closed Won: a conversion saga. Best-effort sync first, then the
  must-succeed customer emitter, and only after that the delete of the
  source record. Emitter failure leaves the source record untouched.

Exports:
    OpportunityStageMachine: Orchestrator for all pipeline transitions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.agency.core.monitoring import contact_sync_total, pipeline_transitions_total
from src.agency.pipeline import activity
from src.agency.pipeline.errors import (
    ConversionFailure,
    InvalidTransitionError,
    OpportunityNotFoundError,
    PersistenceFailure,
)
from src.agency.pipeline.repository import OpportunityRepository
from src.agency.pipeline.schemas import (
    ActivityType,
    CustomerCreate,
    Opportunity,
    OpportunityCreate,
    Pool,
    TransitionKind,
    TransitionRequest,
    TransitionResult,
)
from src.agency.pipeline.transitions import TransitionPlan, plan_transition
from src.agency.services.customers import CustomerEmitter, CustomerEmitterError
from src.agency.services.gsuite.contacts import ContactPayload, ContactSync, ContactSyncError
from src.agency.store.adapter import (
    ConcurrentModificationError,
    RecordNotFoundError,
    RecordStoreError,
)

logger = structlog.get_logger(__name__)

CLIENT_JOB_TITLE = "Client"


@dataclass
class SyncOutcome:
    """Result of one contact sync attempt."""

    outcome: str  # "succeeded" | "failed" | "timeout" | "skipped"
    message: str
    resource_name: str | None = None


@dataclass
class _ConversionProgress:
    """Saga steps already completed, carried across conflict retries."""

    sync: SyncOutcome | None = None
    customer_id: str | None = None
    emitted_version: int | None = None


class OpportunityStageMachine:
    """Drives opportunities through pools and stages.

    Args:
        repository: Pool-aware opportunity repository.
        emitter: Customer emitter used on Closed Won.
        contact_sync: External contact sync; None disables syncing.
        sync_timeout: Seconds allowed for one contact sync.
        conflict_retries: Attempts before a version conflict becomes a
            PersistenceFailure.
    """

    def __init__(
        self,
        repository: OpportunityRepository,
        emitter: CustomerEmitter,
        contact_sync: ContactSync | None = None,
        sync_timeout: float = 10.0,
        conflict_retries: int = 5,
    ) -> None:
        self._repo = repository
        self._emitter = emitter
        self._contact_sync = contact_sync
        self._sync_timeout = sync_timeout
        self._conflict_retries = conflict_retries
        self._pending: set[asyncio.Task[None]] = set()

    # ── Queries ─────────────────────────────────────────────────────────────

    async def create_opportunity(self, data: OpportunityCreate) -> Opportunity:
        try:
            return await self._repo.create(data)
        except RecordStoreError as exc:
            raise PersistenceFailure(f"Failed to create opportunity: {exc}") from exc

    async def get_opportunity(self, opportunity_id: str) -> Opportunity:
        """Fetch the single live copy of an opportunity.

        Raises:
            OpportunityNotFoundError: No live pool holds the id.
            PersistenceFailure: The store failed, or more than one pool
                holds the id.
        """
        try:
            matches = await self._repo.locate(opportunity_id)
        except RecordStoreError as exc:
            raise PersistenceFailure(str(exc), opportunity_id) from exc
        return self._single(opportunity_id, matches)

    async def list_pool(self, pool: Pool) -> list[Opportunity]:
        try:
            return await self._repo.list_pool(pool)
        except RecordStoreError as exc:
            raise PersistenceFailure(f"Failed to list {pool.value}: {exc}") from exc

    # ── Transitions ─────────────────────────────────────────────────────────

    async def transition(
        self, opportunity_id: str, request: TransitionRequest
    ) -> TransitionResult:
        """Apply one requested change to an opportunity.

        Args:
            opportunity_id: Id of the opportunity in any live pool.
            request: Requested pool/stage/outreach change, note, and token.

        Returns:
            TransitionResult with the updated record (None after conversion).

        Raises:
            OpportunityNotFoundError: The id is in no live pool.
            InvalidTransitionError: The change is not in the transition table.
            ConversionFailure: The customer emitter failed on Closed Won.
            PersistenceFailure: The store write failed or kept conflicting.
        """
        progress = _ConversionProgress()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._conflict_retries),
                wait=wait_exponential(multiplier=0.01, max=0.2),
                retry=retry_if_exception_type(
                    (ConcurrentModificationError, RecordNotFoundError)
                ),
                reraise=True,
            ):
                with attempt:
                    result = await self._attempt(opportunity_id, request, progress)
        except ConcurrentModificationError as exc:
            self._count(None, "persistence_failed")
            logger.error(
                "transition.conflict_exhausted",
                opportunity_id=opportunity_id,
                attempts=self._conflict_retries,
            )
            raise PersistenceFailure(
                f"Opportunity {opportunity_id} kept changing underneath the transition",
                opportunity_id,
            ) from exc
        except RecordStoreError as exc:
            self._count(None, "persistence_failed")
            logger.error(
                "transition.persistence_failed",
                opportunity_id=opportunity_id,
                error=str(exc),
            )
            raise PersistenceFailure(str(exc), opportunity_id) from exc
        except InvalidTransitionError:
            self._count(None, "invalid")
            raise
        except ConversionFailure:
            self._count(TransitionKind.CONVERT, "conversion_failed")
            raise

        self._count(result.kind, "ok")
        return result

    async def _attempt(
        self,
        opportunity_id: str,
        request: TransitionRequest,
        progress: _ConversionProgress,
    ) -> TransitionResult:
        current = self._single(opportunity_id, await self._repo.locate(opportunity_id))
        plan = plan_transition(current, request, now=datetime.now(timezone.utc))

        if plan.kind is TransitionKind.CONVERT:
            return await self._convert(current, plan, request, progress)

        updated = plan.apply(current)
        if not activity.is_extension(current.activities, updated.activities):
            raise PersistenceFailure("Activity log would be rewritten", opportunity_id)

        if plan.moves_pool:
            saved = await self._repo.relocate(updated, plan.source_pool)
        else:
            saved = await self._repo.save(updated)

        logger.info(
            "transition.applied",
            opportunity_id=opportunity_id,
            kind=plan.kind.value,
            from_pool=plan.source_pool.value,
            to_pool=plan.target_pool.value,
            stage=saved.stage.value if saved.stage else None,
            score=saved.score,
        )

        sync_scheduled = False
        if plan.sync_job_title is not None:
            self._schedule_sync(saved, plan.sync_job_title, request.sync_token)
            sync_scheduled = True

        return TransitionResult(
            kind=plan.kind,
            pool=saved.pool,
            opportunity=saved,
            sync_scheduled=sync_scheduled,
        )

    # ── Conversion Saga ─────────────────────────────────────────────────────

    async def _convert(
        self,
        current: Opportunity,
        plan: TransitionPlan,
        request: TransitionRequest,
        progress: _ConversionProgress,
    ) -> TransitionResult:
        # Step 1: best-effort contact sync, never repeated on retry
        if progress.sync is None:
            progress.sync = await self._run_sync(current, CLIENT_JOB_TITLE, request.sync_token)
        sync = progress.sync

        entry = plan.entry.model_copy(
            update={"description": f"{plan.entry.description}. Contact sync: {sync.message}"}
        )
        converted = plan.apply(current, entry=entry)
        resource_name = sync.resource_name or current.google_resource_name

        # Step 2: must-succeed customer emitter, gated before any delete.
        # Re-emitted under the same key when a retry re-read a newer version.
        if progress.customer_id is None or progress.emitted_version != current.version:
            fields = CustomerCreate(
                name=converted.display_name,
                company_name=converted.organization,
                mobile=converted.phone,
                email=converted.email,
                google_resource_name=resource_name,
                source_opportunity_id=converted.id,
                score=converted.score,
                value=converted.value,
                activities=converted.activities,
            )
            try:
                progress.customer_id = await self._emitter.create_customer(
                    fields, idempotency_key=current.id
                )
                progress.emitted_version = current.version
            except CustomerEmitterError as exc:
                logger.error(
                    "conversion.emitter_failed",
                    opportunity_id=current.id,
                    pool=current.pool.value,
                    error=str(exc),
                )
                raise ConversionFailure(
                    f"Customer could not be created for {current.id}; "
                    "the opportunity was left in place",
                    current.id,
                ) from exc

        # Step 3: remove the source record only after the customer exists
        await self._repo.delete(current)

        logger.info(
            "conversion.completed",
            opportunity_id=current.id,
            customer_id=progress.customer_id,
            from_pool=current.pool.value,
            contact_sync=sync.outcome,
        )
        return TransitionResult(
            kind=TransitionKind.CONVERT,
            pool=Pool.CONVERTED,
            customer_id=progress.customer_id,
        )

    # ── Contact Sync ────────────────────────────────────────────────────────

    async def _run_sync(
        self, opportunity: Opportunity, job_title: str, token: str | None
    ) -> SyncOutcome:
        """Attempt one bounded contact sync; never raises for sync failures."""
        if self._contact_sync is None:
            result = SyncOutcome("skipped", "skipped (contact sync not configured)")
        elif not token:
            result = SyncOutcome("skipped", "skipped (no access token)")
        else:
            payload = ContactPayload(
                name=opportunity.display_name,
                email=opportunity.email,
                phone=opportunity.phone,
                organization=opportunity.organization,
                role=job_title,
                external_id=opportunity.google_resource_name,
            )
            try:
                resource_name = await asyncio.wait_for(
                    self._contact_sync.upsert_contact(token, payload),
                    timeout=self._sync_timeout,
                )
                result = SyncOutcome("succeeded", f"synced as {resource_name}", resource_name)
            except asyncio.TimeoutError:
                result = SyncOutcome(
                    "timeout", f"failed (timed out after {self._sync_timeout:g}s)"
                )
            except ContactSyncError as exc:
                result = SyncOutcome("failed", f"failed ({exc})")

        contact_sync_total.labels(outcome=result.outcome).inc()
        log = logger.info if result.outcome in ("succeeded", "skipped") else logger.warning
        log(
            "contact_sync.finished",
            opportunity_id=opportunity.id,
            outcome=result.outcome,
            job_title=job_title,
            detail=result.message,
        )
        return result

    def _schedule_sync(self, opportunity: Opportunity, job_title: str, token: str | None) -> None:
        task = asyncio.create_task(self._background_sync(opportunity, job_title, token))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _background_sync(
        self, opportunity: Opportunity, job_title: str, token: str | None
    ) -> None:
        result = await self._run_sync(opportunity, job_title, token)
        entry = activity.new_entry(
            ActivityType.CONTACT_SYNC,
            f"Contact sync ({job_title}): {result.message}",
        )
        extra = {"google_resource_name": result.resource_name} if result.resource_name else None
        try:
            saved = await self._repo.append_activity(opportunity.id, entry, extra)
        except RecordStoreError as exc:
            logger.warning(
                "contact_sync.log_failed",
                opportunity_id=opportunity.id,
                error=str(exc),
            )
            return
        if saved is None:
            logger.warning("contact_sync.record_gone", opportunity_id=opportunity.id)

    async def drain(self) -> None:
        """Wait for all scheduled background syncs to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _single(opportunity_id: str, matches: list[Opportunity]) -> Opportunity:
        if not matches:
            raise OpportunityNotFoundError(opportunity_id)
        if len(matches) > 1:
            logger.error(
                "opportunity.multiple_pools",
                opportunity_id=opportunity_id,
                pools=[m.pool.value for m in matches],
            )
            raise PersistenceFailure(
                f"Opportunity {opportunity_id} is present in more than one pool",
                opportunity_id,
            )
        return matches[0]

    @staticmethod
    def _count(kind: TransitionKind | None, outcome: str) -> None:
        pipeline_transitions_total.labels(
            kind=kind.value if kind else "unresolved", outcome=outcome
        ).inc()
