"""Milestone trigger engine -- turns completed work units into billing alerts.

On every completion report the engine:
1. Re-reads the package and every done work unit linked to it.
2. Builds the authoritative completed set: done units from the fresh read,
   plus the triggering unit (which may not be visible yet), plus the
   package's ``completed_unit_ids`` ledger of units already counted.
3. Evaluates milestones in ascending ``trigger_at_quantity`` order; every
   still-upcoming milestone whose threshold is met moves to ``due`` and gets
   one alert.
4. Commits the package update (version-checked) and the new alerts as one
   batch.

Two reports racing on one package cannot both win step 4: the loser's
version check fails, it re-reads, sees the milestone already ``due`` and the
winner's unit in the ledger, and emits nothing new. The ledger also closes
the undercount gap when more than one completion is invisible to a read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.agency.billing.alerts import BillingAlertSink
from src.agency.billing.errors import (
    MilestoneBatchError,
    PackageNotFoundError,
    WorkUnitNotFoundError,
)
from src.agency.billing.schemas import (
    DONE_STATUSES,
    FULL_PAYMENT_LABEL,
    PACKAGES_COLLECTION,
    WORK_UNITS_COLLECTION,
    AlertKind,
    AlertStatus,
    BillingAlert,
    LineItem,
    Milestone,
    MilestoneStatus,
    Package,
    WorkUnit,
)
from src.agency.core.monitoring import (
    billing_alerts_emitted_total,
    milestone_lag_compensations_total,
)
from src.agency.store.adapter import (
    ConcurrentModificationError,
    RecordExistsError,
    RecordStore,
    RecordStoreError,
    UpdateOp,
)

logger = structlog.get_logger(__name__)


def milestone_alert_id(package_id: str, milestone_index: int) -> str:
    return f"milestone-{package_id}-{milestone_index}"


def standalone_alert_id(unit_id: str) -> str:
    return f"standalone-{unit_id}"


# ── Pure Evaluation ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MilestoneEvaluation:
    """Milestones after evaluation, plus the indices that just became due."""

    milestones: list[Milestone]
    triggered: list[int]


def evaluate_milestones(milestones: list[Milestone], completed_count: int) -> MilestoneEvaluation:
    """Move every upcoming milestone whose threshold is met to ``due``.

    Stored order is preserved in the result; ``triggered`` lists the indices
    of newly due milestones in ascending threshold order. Milestones already
    due or received are never touched.
    """
    updated = list(milestones)
    triggered: list[int] = []
    order = sorted(range(len(milestones)), key=lambda i: milestones[i].trigger_at_quantity)
    for index in order:
        milestone = milestones[index]
        if milestone.status is not MilestoneStatus.UPCOMING:
            continue
        if completed_count >= milestone.trigger_at_quantity:
            updated[index] = milestone.model_copy(update={"status": MilestoneStatus.DUE})
            triggered.append(index)
    return MilestoneEvaluation(milestones=updated, triggered=triggered)


def _bump_line_item(line_items: list[LineItem], index: int | None) -> list[LineItem]:
    if index is None or not 0 <= index < len(line_items):
        return line_items
    bumped = list(line_items)
    item = bumped[index]
    bumped[index] = item.model_copy(update={"completed_count": item.completed_count + 1})
    return bumped


# ── Engine ──────────────────────────────────────────────────────────────────


class MilestoneTriggerEngine:
    """Evaluates package milestones whenever a work unit completes.

    Args:
        store: Record store holding packages and work units.
        sink: Billing alert sink providing alert write operations.
        conflict_retries: Attempts before a package version conflict
            becomes a MilestoneBatchError.
    """

    def __init__(
        self,
        store: RecordStore,
        sink: BillingAlertSink,
        conflict_retries: int = 5,
    ) -> None:
        self._store = store
        self._sink = sink
        self._conflict_retries = conflict_retries

    async def report_unit_completed(
        self,
        package_id: str | None,
        line_item_index: int | None,
        unit_id: str,
    ) -> list[BillingAlert]:
        """Process one work-unit completion.

        Args:
            package_id: Package the unit counts towards; None for a
                standalone unit.
            line_item_index: Line item the unit belongs to, for display
                bookkeeping.
            unit_id: The unit whose completion triggered this call.

        Returns:
            Alerts created by this call (empty when nothing new crossed).

        Raises:
            PackageNotFoundError: ``package_id`` does not exist.
            WorkUnitNotFoundError: A standalone ``unit_id`` does not exist.
            MilestoneBatchError: The batch was not persisted.
        """
        if package_id is None:
            return await self._report_standalone(unit_id)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._conflict_retries),
                wait=wait_exponential(multiplier=0.01, max=0.2),
                retry=retry_if_exception_type(ConcurrentModificationError),
                reraise=True,
            ):
                with attempt:
                    alerts = await self._evaluate_once(package_id, line_item_index, unit_id)
        except ConcurrentModificationError as exc:
            logger.error(
                "milestone.conflict_exhausted",
                package_id=package_id,
                unit_id=unit_id,
                attempts=self._conflict_retries,
            )
            raise MilestoneBatchError(
                package_id, f"Package {package_id} kept changing; no milestones were updated"
            ) from exc
        except RecordStoreError as exc:
            logger.error(
                "milestone.batch_failed",
                package_id=package_id,
                unit_id=unit_id,
                error=str(exc),
            )
            raise MilestoneBatchError(
                package_id, f"Milestone batch for {package_id} was not persisted: {exc}"
            ) from exc

        return alerts

    async def _evaluate_once(
        self,
        package_id: str,
        line_item_index: int | None,
        unit_id: str,
    ) -> list[BillingAlert]:
        record = await self._store.get(PACKAGES_COLLECTION, package_id)
        if record is None:
            raise PackageNotFoundError(package_id)
        package = Package.from_record(record)

        done_units = await self._store.query(
            WORK_UNITS_COLLECTION,
            {"package_id": package_id, "status": [s.value for s in DONE_STATUSES]},
        )
        visible = {u.id for u in done_units}
        if unit_id not in visible:
            milestone_lag_compensations_total.inc()
            logger.info(
                "milestone.lag_compensated",
                package_id=package_id,
                unit_id=unit_id,
                visible_done=len(visible),
            )

        ledger = set(package.completed_unit_ids)
        authoritative = visible | {unit_id} | ledger
        completed_count = len(authoritative)

        evaluation = evaluate_milestones(package.milestones, completed_count)
        is_new_unit = unit_id not in ledger

        if not evaluation.triggered and authoritative == ledger:
            logger.debug("milestone.no_change", package_id=package_id, unit_id=unit_id)
            return []

        line_items = (
            _bump_line_item(package.line_items, line_item_index)
            if is_new_unit
            else package.line_items
        )

        now = datetime.now(timezone.utc)
        alerts = [
            BillingAlert(
                id=milestone_alert_id(package.id, index),
                client_id=package.client_id,
                client_name=package.client_name,
                package_id=package.id,
                package_name=package.package_name,
                milestone_label=package.milestones[index].label,
                milestone_index=index,
                amount=package.milestones[index].amount_due,
                status=AlertStatus.DUE,
                kind=AlertKind.PACKAGE,
                triggered_at=now,
            )
            for index in evaluation.triggered
        ]

        patch = {
            "completed_unit_ids": sorted(authoritative),
            "line_items": [li.model_dump(mode="json") for li in line_items],
            "milestones": [m.model_dump(mode="json") for m in evaluation.milestones],
        }
        await self._store.commit(
            [
                UpdateOp(PACKAGES_COLLECTION, package.id, patch, expected_version=record.version),
                *(self._sink.create_op(alert) for alert in alerts),
            ]
        )

        for alert in alerts:
            billing_alerts_emitted_total.labels(
                kind=AlertKind.PACKAGE.value, status=AlertStatus.DUE.value
            ).inc()

        logger.info(
            "milestone.evaluated",
            package_id=package.id,
            unit_id=unit_id,
            completed_count=completed_count,
            triggered=[package.milestones[i].label for i in evaluation.triggered],
        )
        return alerts

    async def _report_standalone(self, unit_id: str) -> list[BillingAlert]:
        """Emit the single received full-payment alert for a unit with no package."""
        try:
            record = await self._store.get(WORK_UNITS_COLLECTION, unit_id)
        except RecordStoreError as exc:
            raise MilestoneBatchError("", f"Work unit {unit_id} could not be read: {exc}") from exc
        if record is None:
            raise WorkUnitNotFoundError(unit_id)
        unit = WorkUnit.from_record(record)

        now = datetime.now(timezone.utc)
        alert = BillingAlert(
            id=standalone_alert_id(unit.id),
            client_id=unit.client_id,
            client_name=unit.client_name,
            project_id=unit.id,
            task_name=unit.service_name,
            milestone_label=FULL_PAYMENT_LABEL,
            amount=unit.total_amount,
            status=AlertStatus.RECEIVED,
            kind=AlertKind.STANDALONE,
            triggered_at=now,
            resolved_at=now,
        )
        try:
            await self._store.commit([self._sink.create_op(alert)])
        except RecordExistsError:
            logger.info("milestone.standalone_already_emitted", unit_id=unit.id)
            return []
        except RecordStoreError as exc:
            logger.error("milestone.standalone_failed", unit_id=unit.id, error=str(exc))
            raise MilestoneBatchError("", f"Standalone alert for {unit.id} failed: {exc}") from exc

        billing_alerts_emitted_total.labels(
            kind=AlertKind.STANDALONE.value, status=AlertStatus.RECEIVED.value
        ).inc()
        logger.info("milestone.standalone_emitted", unit_id=unit.id, amount=unit.total_amount)
        return [alert]
