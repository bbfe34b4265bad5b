"""Billing alert sink -- where milestone and standalone payment alerts land.

The milestone engine never writes an alert on its own: it asks the sink for
the write operation and commits it together with the package update, so an
alert exists if and only if its milestone moved to ``due``.

Status changes go through ``update_status``. An alert entering or leaving
``received`` moves its package's ``received_amount`` and milestone status
in the same version-checked commit, so the two never disagree.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.agency.billing.errors import AlertNotFoundError
from src.agency.billing.schemas import (
    ALERTS_COLLECTION,
    PACKAGES_COLLECTION,
    AlertKind,
    AlertStatus,
    BillingAlert,
    MilestoneStatus,
    Package,
)
from src.agency.store.adapter import (
    ConcurrentModificationError,
    CreateOp,
    DeleteOp,
    RecordStore,
    UpdateOp,
    WriteOp,
)

logger = structlog.get_logger(__name__)


class BillingAlertSink(ABC):
    """Abstract interface for billing alert storage."""

    @abstractmethod
    def create_op(self, alert: BillingAlert) -> CreateOp:
        """Write operation creating ``alert``, for inclusion in a batch."""
        ...

    @abstractmethod
    def status_op(
        self,
        alert: BillingAlert,
        status: AlertStatus,
        extra: dict[str, Any] | None = None,
    ) -> UpdateOp:
        """Version-checked write operation changing ``alert``'s status."""
        ...

    @abstractmethod
    def delete_op(self, alert: BillingAlert) -> DeleteOp:
        ...

    @abstractmethod
    async def get(self, alert_id: str) -> BillingAlert | None:
        ...

    @abstractmethod
    async def list_alerts(self, filters: dict[str, Any] | None = None) -> list[BillingAlert]:
        ...

    @abstractmethod
    async def create(self, alert: BillingAlert) -> BillingAlert:
        ...

    @abstractmethod
    async def update_status(self, alert_id: str, status: AlertStatus) -> BillingAlert:
        """Change an alert's status, keeping package bookkeeping in step.

        Raises:
            AlertNotFoundError: No alert with that id, before or after the write.
        """
        ...

    @abstractmethod
    async def delete(self, alert_id: str) -> None:
        """Delete an alert, reversing package bookkeeping if it was received."""
        ...


class StoreBillingAlertSink(BillingAlertSink):
    """BillingAlertSink backed by the record store's ``payment_alerts`` collection.

    Args:
        store: Record store holding alerts and packages.
        conflict_retries: Attempts for version-checked status changes.
    """

    def __init__(self, store: RecordStore, conflict_retries: int = 5) -> None:
        self._store = store
        self._conflict_retries = conflict_retries

    # ── Batch operations ────────────────────────────────────────────────────

    def create_op(self, alert: BillingAlert) -> CreateOp:
        return CreateOp(ALERTS_COLLECTION, alert.to_document(), alert.id)

    def status_op(
        self,
        alert: BillingAlert,
        status: AlertStatus,
        extra: dict[str, Any] | None = None,
    ) -> UpdateOp:
        return UpdateOp(
            ALERTS_COLLECTION,
            alert.id,
            {"status": status.value, **(extra or {})},
            expected_version=alert.version,
        )

    def delete_op(self, alert: BillingAlert) -> DeleteOp:
        return DeleteOp(ALERTS_COLLECTION, alert.id, expected_version=alert.version)

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, alert_id: str) -> BillingAlert | None:
        record = await self._store.get(ALERTS_COLLECTION, alert_id)
        if record is None:
            return None
        return BillingAlert.from_record(record)

    async def list_alerts(self, filters: dict[str, Any] | None = None) -> list[BillingAlert]:
        records = await self._store.query(ALERTS_COLLECTION, filters)
        alerts = [BillingAlert.from_record(r) for r in records]
        return sorted(alerts, key=lambda a: a.triggered_at, reverse=True)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create(self, alert: BillingAlert) -> BillingAlert:
        (record,) = await self._store.commit([self.create_op(alert)])
        logger.info("billing_alert.created", alert_id=alert.id, status=alert.status.value)
        return BillingAlert.from_record(record)

    async def update_status(self, alert_id: str, status: AlertStatus) -> BillingAlert:
        async for attempt in self._retrying():
            with attempt:
                alert = await self._require(alert_id)
                ops = await self._status_ops(alert, status)
                if not ops:
                    return alert
                await self._store.commit(ops)

        logger.info("billing_alert.status_changed", alert_id=alert_id, status=status.value)
        return await self._require(alert_id)

    async def delete(self, alert_id: str) -> None:
        async for attempt in self._retrying():
            with attempt:
                alert = await self._require(alert_id)
                ops: list[WriteOp] = [self.delete_op(alert)]
                if alert.status is AlertStatus.RECEIVED:
                    package_op = await self._bookkeeping_op(
                        alert, -alert.amount, MilestoneStatus.DUE
                    )
                    if package_op is not None:
                        ops.append(package_op)
                await self._store.commit(ops)

        logger.info("billing_alert.deleted", alert_id=alert_id)

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._conflict_retries),
            wait=wait_exponential(multiplier=0.01, max=0.2),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=True,
        )

    async def _require(self, alert_id: str) -> BillingAlert:
        alert = await self.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def _status_ops(self, alert: BillingAlert, status: AlertStatus) -> list[WriteOp]:
        """Build the batch for one status change; empty when nothing changes.

        Entering ``received`` books the payment on the package; leaving it
        (pending, waiting, undo to due) reverses that booking.
        """
        if alert.status is status:
            return []

        if status is AlertStatus.RECEIVED:
            now = datetime.now(timezone.utc)
            ops: list[WriteOp] = [
                self.status_op(alert, status, {"resolved_at": now.isoformat()})
            ]
            package_op = await self._bookkeeping_op(
                alert, alert.amount, MilestoneStatus.RECEIVED, now
            )
        else:
            ops = [self.status_op(alert, status, {"resolved_at": None})]
            package_op = None
            if alert.status is AlertStatus.RECEIVED:
                package_op = await self._bookkeeping_op(
                    alert, -alert.amount, MilestoneStatus.DUE
                )

        if package_op is not None:
            ops.append(package_op)
        return ops

    async def _bookkeeping_op(
        self,
        alert: BillingAlert,
        amount_delta: float,
        milestone_status: MilestoneStatus,
        paid_at: datetime | None = None,
    ) -> UpdateOp | None:
        if alert.kind is not AlertKind.PACKAGE or not alert.package_id:
            return None
        record = await self._store.get(PACKAGES_COLLECTION, alert.package_id)
        if record is None:
            logger.warning(
                "billing_alert.package_missing", alert_id=alert.id, package_id=alert.package_id
            )
            return None
        package = Package.from_record(record)

        milestones = [
            m.model_copy(
                update={
                    "status": milestone_status,
                    "paid_date": paid_at if milestone_status is MilestoneStatus.RECEIVED else None,
                }
            )
            if index == alert.milestone_index
            else m
            for index, m in enumerate(package.milestones)
        ]
        received = max(0.0, package.received_amount + amount_delta)
        return UpdateOp(
            PACKAGES_COLLECTION,
            package.id,
            {
                "received_amount": received,
                "milestones": [m.model_dump(mode="json") for m in milestones],
            },
            expected_version=record.version,
        )
