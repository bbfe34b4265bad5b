"""Package setup -- milestones, advance payments, and opening alerts.

A new package and every alert it opens with are written in one commit.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field

from src.agency.billing.alerts import BillingAlertSink
from src.agency.billing.engine import milestone_alert_id
from src.agency.billing.errors import PackageNotFoundError
from src.agency.billing.schemas import (
    PACKAGES_COLLECTION,
    AlertKind,
    AlertStatus,
    BillingAlert,
    Milestone,
    MilestoneStatus,
    Package,
    PackageCreate,
    round_half_up,
)
from src.agency.core.monitoring import billing_alerts_emitted_total
from src.agency.store.adapter import CreateOp, RecordStore

logger = structlog.get_logger(__name__)


class PackageCreated(BaseModel):
    """A freshly created package and the alerts it opened with."""

    package: Package
    alerts: list[BillingAlert] = Field(default_factory=list)


def build_milestones(data: PackageCreate, now: datetime) -> list[Milestone]:
    """Turn entered milestone specs into stored milestones.

    Advance milestones are received on creation. A non-advance milestone
    triggering at zero completed units is due immediately.
    """
    milestones: list[Milestone] = []
    for spec in data.milestones:
        if spec.is_advance:
            status = MilestoneStatus.RECEIVED
        elif spec.trigger_at_quantity == 0:
            status = MilestoneStatus.DUE
        else:
            status = MilestoneStatus.UPCOMING
        milestones.append(
            Milestone(
                label=spec.label,
                percentage=spec.percentage,
                trigger_at_quantity=spec.trigger_at_quantity,
                status=status,
                amount_due=round_half_up(spec.percentage / 100 * data.total_amount),
                paid_date=now if spec.is_advance else None,
            )
        )
    return milestones


class PackageService:
    """Creates and reads packages.

    Args:
        store: Record store holding the packages collection.
        sink: Billing alert sink for the opening alerts.
    """

    def __init__(self, store: RecordStore, sink: BillingAlertSink) -> None:
        self._store = store
        self._sink = sink

    async def create_package(self, data: PackageCreate) -> PackageCreated:
        now = datetime.now(timezone.utc)
        milestones = build_milestones(data, now)
        received = sum(
            m.amount_due
            for m, spec in zip(milestones, data.milestones)
            if spec.is_advance
        )

        package = Package(
            id=str(uuid.uuid4()),
            client_id=data.client_id,
            client_name=data.client_name,
            package_name=data.package_name,
            period=data.period,
            line_items=[li.model_copy(update={"completed_count": 0}) for li in data.line_items],
            total_amount=data.total_amount,
            received_amount=received,
            milestones=milestones,
            created_at=now,
        )

        alerts: list[BillingAlert] = []
        for index, milestone in enumerate(milestones):
            if milestone.status is MilestoneStatus.UPCOMING:
                continue
            received_now = milestone.status is MilestoneStatus.RECEIVED
            alerts.append(
                BillingAlert(
                    id=milestone_alert_id(package.id, index),
                    client_id=package.client_id,
                    client_name=package.client_name,
                    package_id=package.id,
                    package_name=package.package_name,
                    milestone_label=milestone.label,
                    milestone_index=index,
                    amount=milestone.amount_due,
                    status=AlertStatus.RECEIVED if received_now else AlertStatus.DUE,
                    kind=AlertKind.PACKAGE,
                    triggered_at=now,
                    resolved_at=now if received_now else None,
                )
            )

        results = await self._store.commit(
            [
                CreateOp(PACKAGES_COLLECTION, package.to_document(), package.id),
                *(self._sink.create_op(alert) for alert in alerts),
            ]
        )

        for alert in alerts:
            billing_alerts_emitted_total.labels(
                kind=alert.kind.value, status=alert.status.value
            ).inc()

        logger.info(
            "package.created",
            package_id=package.id,
            client_id=package.client_id,
            milestones=len(milestones),
            opening_alerts=len(alerts),
            received_amount=received,
        )
        return PackageCreated(package=Package.from_record(results[0]), alerts=alerts)

    async def get_package(self, package_id: str) -> Package:
        record = await self._store.get(PACKAGES_COLLECTION, package_id)
        if record is None:
            raise PackageNotFoundError(package_id)
        return Package.from_record(record)

    async def list_packages(self, client_id: str | None = None) -> list[Package]:
        filters = {"client_id": client_id} if client_id else None
        records = await self._store.query(PACKAGES_COLLECTION, filters)
        packages = [Package.from_record(r) for r in records]
        return sorted(packages, key=lambda p: p.created_at, reverse=True)
