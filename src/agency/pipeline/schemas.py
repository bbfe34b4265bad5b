"""Pydantic schemas for the opportunity pipeline -- pools, stages, activities.

Defines all structured types for the sales funnel:
- Enums: Pool, Stage, OutreachStatus, ContactChannel, ActivityType, TransitionKind
- Pool layout: POOL_COLLECTIONS, LIVE_POOLS, POOL_LABELS, OPEN_STAGES
- Records: ContactMethod, ActivityEntry, Opportunity
- Requests/results: OpportunityCreate, TransitionRequest, TransitionResult
- Conversion payload: CustomerCreate
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.agency.store.adapter import StoredRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class Pool(str, Enum):
    """Mutually exclusive partition an opportunity belongs to.

    CONVERTED is terminal: the record is no longer an opportunity but a
    customer, so it has no collection of its own.
    """

    PROSPECT = "prospect"
    ACTIVE_DEAL = "active_deal"
    NURTURE = "nurture"
    DORMANT = "dormant"
    SUPPRESSED = "suppressed"
    CONVERTED = "converted"


class Stage(str, Enum):
    """Sub-state of an opportunity while it sits in the ActiveDeal pool."""

    NEW_PROSPECT = "New Prospect"
    CONTACTED = "Contacted"
    QUALIFIED = "Qualified"
    PROPOSAL_SENT = "Proposal Sent"
    NEGOTIATION = "Negotiation"
    CLOSED_WON = "Closed Won"
    CLOSED_LOST = "Closed Lost"


class OutreachStatus(str, Enum):
    """Cold-outreach progress tracked while a lead is still a Prospect."""

    NOT_CONTACTED = "Not Contacted"
    MESSAGE_SENT = "Message Sent"
    REPLIED = "Replied"


class ContactChannel(str, Enum):
    PHONE = "phone"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    WEBSITE = "website"
    OTHER = "other"


class ActivityType(str, Enum):
    STATUS_CHANGE = "status_change"
    STAGE_MOVE = "stage_move"
    NOTE = "note"
    CONTACT_SYNC = "contact_sync"
    CONVERSION = "conversion"


class TransitionKind(str, Enum):
    """Every row of the pipeline transition table, named by its trigger."""

    OUTREACH_SENT = "outreach_sent"
    OUTREACH_REPLIED = "outreach_replied"
    INTERESTED = "interested"
    NOT_NOW = "not_now"
    NO_RESPONSE = "no_response"
    NOT_INTERESTED = "not_interested"
    STAGE_MOVE = "stage_move"
    NURTURE = "nurture"
    CLOSED_LOST = "closed_lost"
    CONVERT = "convert"
    REACTIVATE = "reactivate"
    NOTE = "note"


# ── Pool Layout ─────────────────────────────────────────────────────────────

# One store collection per live pool. Converted records leave the pipeline.
POOL_COLLECTIONS: dict[Pool, str] = {
    Pool.PROSPECT: "campaign_prospects",
    Pool.ACTIVE_DEAL: "active_deals",
    Pool.NURTURE: "nurtured_leads",
    Pool.DORMANT: "silent_leads",
    Pool.SUPPRESSED: "suppressed_leads",
}

COLLECTION_POOLS: dict[str, Pool] = {v: k for k, v in POOL_COLLECTIONS.items()}

LIVE_POOLS: tuple[Pool, ...] = tuple(POOL_COLLECTIONS)

POOL_LABELS: dict[Pool, str] = {
    Pool.PROSPECT: "Prospect",
    Pool.ACTIVE_DEAL: "Active Deal",
    Pool.NURTURE: "Nurture",
    Pool.DORMANT: "Dormant",
    Pool.SUPPRESSED: "Suppressed",
    Pool.CONVERTED: "Converted",
}

OPEN_STAGES: frozenset[Stage] = frozenset(
    {
        Stage.NEW_PROSPECT,
        Stage.CONTACTED,
        Stage.QUALIFIED,
        Stage.PROPOSAL_SENT,
        Stage.NEGOTIATION,
    }
)

# Reaching one of these stages triggers a background contact sync.
SYNC_STAGES: frozenset[Stage] = frozenset({Stage.PROPOSAL_SENT, Stage.NEGOTIATION})


# ── Records ─────────────────────────────────────────────────────────────────


class ContactMethod(BaseModel):
    """One way of reaching the lead, tagged by channel."""

    type: ContactChannel
    value: str


class ActivityEntry(BaseModel):
    """One immutable, timestamped log line attached to an opportunity."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)
    type: ActivityType
    description: str
    old_value: str | None = None
    new_value: str | None = None


class Opportunity(BaseModel):
    """A sales lead living in exactly one pool.

    ``pool`` mirrors the collection the record is stored in; ``version`` is
    the store-maintained optimistic-concurrency counter and is never part of
    the stored document.
    """

    id: str
    display_name: str
    organization: str | None = None
    contact_methods: list[ContactMethod] = Field(default_factory=list)
    pool: Pool = Pool.PROSPECT
    stage: Stage | None = None
    score: int = 0
    value: float | None = None
    activities: list[ActivityEntry] = Field(default_factory=list)

    outreach_status: OutreachStatus = OutreachStatus.NOT_CONTACTED
    attempt_count: int = 0
    last_contacted_at: datetime | None = None
    nurture_reason: str | None = None
    lost: bool = False
    lost_at: datetime | None = None
    google_resource_name: str | None = None

    stage_entered_at: datetime | None = None
    pool_entered_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    def contact(self, *channels: ContactChannel) -> str | None:
        """First contact value on any of the given channels, in stored order."""
        for method in self.contact_methods:
            if method.type in channels:
                return method.value
        return None

    @property
    def email(self) -> str | None:
        return self.contact(ContactChannel.EMAIL)

    @property
    def phone(self) -> str | None:
        return self.contact(ContactChannel.PHONE, ContactChannel.WHATSAPP)

    @property
    def position_label(self) -> str:
        """Stage name in ActiveDeal, pool label everywhere else."""
        if self.stage is not None:
            return self.stage.value
        return POOL_LABELS[self.pool]

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "version"})

    @classmethod
    def from_record(cls, record: StoredRecord) -> Opportunity:
        data = dict(record.document)
        data["id"] = record.id
        data["version"] = record.version
        data["pool"] = COLLECTION_POOLS[record.collection]
        return cls.model_validate(data)


# ── Requests and Results ────────────────────────────────────────────────────


class OpportunityCreate(BaseModel):
    """Schema for adding a new lead to the Prospect pool."""

    display_name: str = Field(min_length=1)
    organization: str | None = None
    contact_methods: list[ContactMethod] = Field(default_factory=list)
    value: float | None = None


class TransitionRequest(BaseModel):
    """A requested change to an opportunity's pool, stage, or outreach mark.

    ``sync_token`` is the opaque access token handed to the contact sync
    collaborator; without it contact sync is skipped.
    """

    pool: Pool | None = None
    stage: Stage | None = None
    outreach: OutreachStatus | None = None
    note: str | None = None
    reason: str | None = None
    sync_token: str | None = Field(default=None, repr=False)


class TransitionResult(BaseModel):
    """Outcome of a successful transition.

    ``opportunity`` is None after a conversion: the record has become a
    customer and ``customer_id`` identifies it.
    """

    kind: TransitionKind
    pool: Pool
    opportunity: Opportunity | None = None
    customer_id: str | None = None
    sync_scheduled: bool = False


class CustomerCreate(BaseModel):
    """Fields written by the customer emitter when a deal closes won."""

    name: str
    company_name: str | None = None
    mobile: str | None = None
    email: str | None = None
    source: str = "Outbound"
    status: str = "Active"
    google_resource_name: str | None = None
    source_opportunity_id: str
    score: int = 0
    value: float | None = None
    activities: list[ActivityEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
