"""Pydantic schemas for packages, work units, milestones, and billing alerts.

Defines all structured types for billing:
- Enums: MilestoneStatus, PackageStatus, AlertStatus, AlertKind, WorkUnitStatus
- Packages: LineItem, Milestone, MilestoneSpec, Package, PackageCreate
- Work units: WorkUnit, WorkUnitCreate
- Alerts: BillingAlert

Collections: packages, projects (work units), payment_alerts.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.agency.store.adapter import StoredRecord

PACKAGES_COLLECTION = "packages"
WORK_UNITS_COLLECTION = "projects"
ALERTS_COLLECTION = "payment_alerts"

FULL_PAYMENT_LABEL = "Full Payment"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(amount: float) -> float:
    """Round to whole currency units, halves away from zero for positives."""
    return float(math.floor(amount + 0.5))


# ── Enums ───────────────────────────────────────────────────────────────────


class MilestoneStatus(str, Enum):
    UPCOMING = "upcoming"
    DUE = "due"
    RECEIVED = "received"


class PackageStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class AlertStatus(str, Enum):
    DUE = "due"
    PENDING = "pending"
    WAITING = "waiting"
    RECEIVED = "received"


class AlertKind(str, Enum):
    """Package milestone payment, or full payment of a standalone unit."""

    PACKAGE = "package"
    STANDALONE = "standalone"


class WorkUnitStatus(str, Enum):
    ALLOCATED = "Allocated"
    PENDING = "Pending"
    WORKING = "Working"
    WAITING = "Waiting"
    FINISHED = "Finished"
    COMPLETED = "Completed"
    CLOSED = "Closed"


DONE_STATUSES: frozenset[WorkUnitStatus] = frozenset(
    {WorkUnitStatus.FINISHED, WorkUnitStatus.COMPLETED, WorkUnitStatus.CLOSED}
)


# ── Packages ────────────────────────────────────────────────────────────────


class LineItem(BaseModel):
    """One service inside a package.

    ``completed_count`` is display bookkeeping only; milestone decisions are
    made from the work units themselves.
    """

    service_label: str
    target_quantity: int = Field(default=1, ge=0)
    completed_count: int = Field(default=0, ge=0)


class Milestone(BaseModel):
    label: str
    percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    trigger_at_quantity: int = Field(default=0, ge=0)
    status: MilestoneStatus = MilestoneStatus.UPCOMING
    amount_due: float = 0.0
    paid_date: datetime | None = None


class MilestoneSpec(BaseModel):
    """Milestone as entered when a package is created."""

    label: str = Field(min_length=1)
    percentage: float = Field(ge=0.0, le=100.0)
    trigger_at_quantity: int = Field(default=0, ge=0)
    is_advance: bool = False


class Package(BaseModel):
    """A billable bundle of work units with threshold-triggered milestones.

    ``completed_unit_ids`` is the set of work units already counted towards
    the milestones; it only ever grows.
    """

    id: str
    client_id: str
    client_name: str = ""
    package_name: str
    period: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    total_amount: float = 0.0
    received_amount: float = 0.0
    milestones: list[Milestone] = Field(default_factory=list)
    status: PackageStatus = PackageStatus.ACTIVE
    completed_unit_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "version"})

    @classmethod
    def from_record(cls, record: StoredRecord) -> Package:
        return cls.model_validate({**record.document, "id": record.id, "version": record.version})


class PackageCreate(BaseModel):
    """Schema for packaging work for a client."""

    client_id: str
    client_name: str = ""
    package_name: str = Field(min_length=1)
    period: str | None = None
    total_amount: float = Field(ge=0.0)
    line_items: list[LineItem] = Field(default_factory=list)
    milestones: list[MilestoneSpec] = Field(default_factory=list)


# ── Work Units ──────────────────────────────────────────────────────────────


class WorkUnit(BaseModel):
    """A task delivered for a client, optionally counted towards a package."""

    id: str
    client_id: str
    client_name: str = ""
    service_name: str
    package_id: str | None = None
    line_item_index: int | None = None
    total_amount: float = 0.0
    received_amount: float = 0.0
    status: WorkUnitStatus = WorkUnitStatus.ALLOCATED
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "version"})

    @classmethod
    def from_record(cls, record: StoredRecord) -> WorkUnit:
        return cls.model_validate({**record.document, "id": record.id, "version": record.version})


class WorkUnitCreate(BaseModel):
    client_id: str
    client_name: str = ""
    service_name: str = Field(min_length=1)
    package_id: str | None = None
    line_item_index: int | None = Field(default=None, ge=0)
    total_amount: float = Field(default=0.0, ge=0.0)


# ── Billing Alerts ──────────────────────────────────────────────────────────


class BillingAlert(BaseModel):
    """Money currently owed or received.

    Package alerts carry ``package_id``, the milestone label and
    ``milestone_index`` (its position in ``Package.milestones``, the key
    payment bookkeeping matches on, since labels may repeat). Standalone
    alerts carry ``project_id`` and the task name instead.
    """

    id: str
    client_id: str
    client_name: str = ""
    package_id: str | None = None
    package_name: str | None = None
    project_id: str | None = None
    task_name: str | None = None
    milestone_label: str
    milestone_index: int | None = None
    amount: float
    status: AlertStatus = AlertStatus.DUE
    kind: AlertKind = AlertKind.PACKAGE
    triggered_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None
    version: int = 0

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "version"})

    @classmethod
    def from_record(cls, record: StoredRecord) -> BillingAlert:
        return cls.model_validate({**record.document, "id": record.id, "version": record.version})
