"""Pipeline transition table -- resolve a request, then plan the whole change.

Planning is pure: given the freshly read opportunity and the request it
computes the target pool and stage, the new score, the activity entry and
every field update together, before anything touches the store. The stage
machine then persists the plan as one write.

Transition rules per source pool live in ALLOWED_KINDS. Suppressed is
terminal and accepts nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.agency.pipeline import activity
from src.agency.pipeline.errors import InvalidTransitionError
from src.agency.pipeline.schemas import (
    OPEN_STAGES,
    POOL_LABELS,
    SYNC_STAGES,
    ActivityEntry,
    ActivityType,
    Opportunity,
    OutreachStatus,
    Pool,
    Stage,
    TransitionKind,
    TransitionRequest,
)
from src.agency.pipeline.scoring import next_score

# ── Transition Rules ────────────────────────────────────────────────────────

# Maps each live pool to the transition kinds it accepts.
ALLOWED_KINDS: dict[Pool, frozenset[TransitionKind]] = {
    Pool.PROSPECT: frozenset(
        {
            TransitionKind.OUTREACH_SENT,
            TransitionKind.OUTREACH_REPLIED,
            TransitionKind.INTERESTED,
            TransitionKind.NOT_NOW,
            TransitionKind.NO_RESPONSE,
            TransitionKind.NOT_INTERESTED,
            TransitionKind.NOTE,
        }
    ),
    Pool.ACTIVE_DEAL: frozenset(
        {
            TransitionKind.STAGE_MOVE,
            TransitionKind.NURTURE,
            TransitionKind.CLOSED_LOST,
            TransitionKind.CONVERT,
            TransitionKind.NOTE,
        }
    ),
    Pool.NURTURE: frozenset(
        {TransitionKind.REACTIVATE, TransitionKind.CONVERT, TransitionKind.NOTE}
    ),
    Pool.DORMANT: frozenset(
        {TransitionKind.REACTIVATE, TransitionKind.CONVERT, TransitionKind.NOTE}
    ),
    Pool.SUPPRESSED: frozenset(),  # Terminal pool
}

# Pool each kind lands in; None means the record stays where it is.
TARGET_POOLS: dict[TransitionKind, Pool | None] = {
    TransitionKind.OUTREACH_SENT: None,
    TransitionKind.OUTREACH_REPLIED: None,
    TransitionKind.INTERESTED: Pool.ACTIVE_DEAL,
    TransitionKind.NOT_NOW: Pool.NURTURE,
    TransitionKind.NO_RESPONSE: Pool.DORMANT,
    TransitionKind.NOT_INTERESTED: Pool.SUPPRESSED,
    TransitionKind.STAGE_MOVE: Pool.ACTIVE_DEAL,
    TransitionKind.NURTURE: Pool.NURTURE,
    TransitionKind.CLOSED_LOST: Pool.DORMANT,
    TransitionKind.CONVERT: Pool.CONVERTED,
    TransitionKind.REACTIVATE: Pool.ACTIVE_DEAL,
    TransitionKind.NOTE: None,
}

# Pool moves requested out of Prospect without a stage.
_PROSPECT_POOL_KINDS: dict[Pool, TransitionKind] = {
    Pool.ACTIVE_DEAL: TransitionKind.INTERESTED,
    Pool.NURTURE: TransitionKind.NOT_NOW,
    Pool.DORMANT: TransitionKind.NO_RESPONSE,
    Pool.SUPPRESSED: TransitionKind.NOT_INTERESTED,
}

DEFAULT_NURTURE_REASON = "Timing"


# ── Plan ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransitionPlan:
    """Everything one transition changes, computed before persistence.

    Attributes:
        kind: Resolved row of the transition table.
        source_pool: Pool the record was read from.
        target_pool: Pool the record ends in (CONVERTED for conversions).
        target_stage: Stage after the move; None outside ActiveDeal.
        score: New score.
        entry: Activity entry appended by this transition.
        changes: Remaining field updates (outreach, nurture, lost, timestamps).
        sync_job_title: Job title for a background contact sync, or None.
    """

    kind: TransitionKind
    source_pool: Pool
    target_pool: Pool
    target_stage: Stage | None
    score: int
    entry: ActivityEntry
    changes: dict[str, Any] = field(default_factory=dict)
    sync_job_title: str | None = None

    @property
    def moves_pool(self) -> bool:
        return self.target_pool is not self.source_pool

    def apply(self, opportunity: Opportunity, entry: ActivityEntry | None = None) -> Opportunity:
        """Return a copy of ``opportunity`` with the plan applied.

        ``entry`` overrides the planned activity entry; conversions use it
        to record the contact sync outcome.
        """
        return opportunity.model_copy(
            update={
                "pool": self.target_pool,
                "stage": self.target_stage,
                "score": self.score,
                "activities": activity.append(opportunity.activities, entry or self.entry),
                **self.changes,
            }
        )


# ── Resolution ──────────────────────────────────────────────────────────────


def _invalid(opportunity: Opportunity, detail: str) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Invalid transition from {opportunity.position_label}: {detail}",
        opportunity.id,
    )


def _classify(opportunity: Opportunity, request: TransitionRequest) -> TransitionKind:
    current = opportunity.pool

    if request.outreach is not None:
        if request.pool is not None or request.stage is not None:
            raise _invalid(opportunity, "outreach marks cannot be combined with a move")
        if request.outreach is OutreachStatus.MESSAGE_SENT:
            return TransitionKind.OUTREACH_SENT
        if request.outreach is OutreachStatus.REPLIED:
            return TransitionKind.OUTREACH_REPLIED
        raise _invalid(opportunity, f"cannot mark outreach as {request.outreach.value}")

    if request.stage is Stage.CLOSED_WON or request.pool is Pool.CONVERTED:
        if request.pool not in (None, Pool.CONVERTED) or request.stage not in (
            None,
            Stage.CLOSED_WON,
        ):
            raise _invalid(opportunity, "Closed Won always converts")
        return TransitionKind.CONVERT

    if request.stage is Stage.CLOSED_LOST:
        if request.pool not in (None, Pool.DORMANT):
            raise _invalid(opportunity, "Closed Lost always lands in Dormant")
        return TransitionKind.CLOSED_LOST

    if request.stage is not None:
        if request.pool not in (None, Pool.ACTIVE_DEAL):
            raise _invalid(opportunity, "stages only exist in Active Deal")
        if current is Pool.PROSPECT:
            if request.stage is not Stage.NEW_PROSPECT:
                raise _invalid(opportunity, "prospects enter Active Deal at New Prospect")
            return TransitionKind.INTERESTED
        if current is Pool.ACTIVE_DEAL:
            if request.stage is opportunity.stage:
                raise _invalid(opportunity, f"already at {request.stage.value}")
            return TransitionKind.STAGE_MOVE
        return TransitionKind.REACTIVATE

    if request.pool is not None:
        if request.pool is current:
            raise _invalid(opportunity, f"already in {POOL_LABELS[current]}")
        if current is Pool.PROSPECT and request.pool in _PROSPECT_POOL_KINDS:
            return _PROSPECT_POOL_KINDS[request.pool]
        if current is Pool.ACTIVE_DEAL and request.pool is Pool.NURTURE:
            return TransitionKind.NURTURE
        if current in (Pool.NURTURE, Pool.DORMANT) and request.pool is Pool.ACTIVE_DEAL:
            return TransitionKind.REACTIVATE
        raise _invalid(opportunity, f"cannot move to {POOL_LABELS[request.pool]}")

    if request.note and request.note.strip():
        return TransitionKind.NOTE

    raise _invalid(opportunity, "nothing to do")


def resolve_kind(opportunity: Opportunity, request: TransitionRequest) -> TransitionKind:
    """Map a request onto one row of the transition table.

    Raises:
        InvalidTransitionError: The request matches no row reachable from
            the opportunity's current pool and stage.
    """
    if not ALLOWED_KINDS.get(opportunity.pool):
        raise _invalid(opportunity, f"{POOL_LABELS[opportunity.pool]} is terminal")

    kind = _classify(opportunity, request)
    if kind not in ALLOWED_KINDS[opportunity.pool]:
        raise _invalid(opportunity, f"{kind.value} is not allowed here")
    return kind


# ── Planning ────────────────────────────────────────────────────────────────


def _with_note(description: str, note: str | None) -> str:
    if note and note.strip():
        return f"{description}. Note: {note.strip()}"
    return description


def plan_transition(
    opportunity: Opportunity,
    request: TransitionRequest,
    now: datetime | None = None,
) -> TransitionPlan:
    """Compute the complete effect of ``request`` on ``opportunity``.

    Args:
        opportunity: Freshly read record, including its current pool.
        request: Requested pool/stage/outreach change and optional note.
        now: Timestamp for the entry and any timestamp fields.

    Returns:
        TransitionPlan describing the move, score, entry, and field updates.

    Raises:
        InvalidTransitionError: If the request is not in the transition table
            or is missing a required reason.
    """
    now = now or datetime.now(timezone.utc)
    kind = resolve_kind(opportunity, request)
    source = opportunity.pool
    target = TARGET_POOLS[kind] or source
    old_label = opportunity.position_label
    changes: dict[str, Any] = {}
    sync_job_title: str | None = None

    if kind is TransitionKind.OUTREACH_SENT:
        target_stage = opportunity.stage
        attempts = opportunity.attempt_count + 1
        changes.update(
            outreach_status=OutreachStatus.MESSAGE_SENT,
            attempt_count=attempts,
            last_contacted_at=now,
        )
        entry_type = ActivityType.STATUS_CHANGE
        description = f"Outreach message sent (attempt {attempts})"
        old_value = opportunity.outreach_status.value
        new_value = OutreachStatus.MESSAGE_SENT.value

    elif kind is TransitionKind.OUTREACH_REPLIED:
        target_stage = opportunity.stage
        changes.update(outreach_status=OutreachStatus.REPLIED)
        entry_type = ActivityType.STATUS_CHANGE
        description = "Prospect replied"
        old_value = opportunity.outreach_status.value
        new_value = OutreachStatus.REPLIED.value

    elif kind is TransitionKind.NOTE:
        target_stage = opportunity.stage
        entry_type = ActivityType.NOTE
        description = request.note.strip() if request.note else ""
        old_value = new_value = None

    elif kind in (TransitionKind.NOT_NOW, TransitionKind.NURTURE):
        reason = (request.reason or "").strip()
        if not reason:
            if kind is TransitionKind.NOT_NOW:
                raise _invalid(opportunity, "a reason is required to nurture a prospect")
            reason = DEFAULT_NURTURE_REASON
        target_stage = None
        changes.update(nurture_reason=reason)
        entry_type = ActivityType.STATUS_CHANGE
        description = f"Moved to Nurture: {reason}"
        old_value, new_value = old_label, POOL_LABELS[Pool.NURTURE]

    elif kind is TransitionKind.NO_RESPONSE:
        target_stage = None
        entry_type = ActivityType.STATUS_CHANGE
        description = "Moved to Dormant: no response"
        old_value, new_value = old_label, POOL_LABELS[Pool.DORMANT]

    elif kind is TransitionKind.NOT_INTERESTED:
        target_stage = None
        entry_type = ActivityType.STATUS_CHANGE
        description = "Suppressed: not interested"
        old_value, new_value = old_label, POOL_LABELS[Pool.SUPPRESSED]

    elif kind is TransitionKind.INTERESTED:
        target_stage = Stage.NEW_PROSPECT
        entry_type = ActivityType.STATUS_CHANGE
        description = "Prospect interested, moved to Active Deal"
        old_value, new_value = old_label, Stage.NEW_PROSPECT.value

    elif kind is TransitionKind.STAGE_MOVE:
        target_stage = request.stage
        entry_type = ActivityType.STAGE_MOVE
        description = f"Stage changed from {old_label} to {target_stage.value}"
        old_value, new_value = old_label, target_stage.value

    elif kind is TransitionKind.REACTIVATE:
        target_stage = request.stage if request.stage in OPEN_STAGES else Stage.NEW_PROSPECT
        changes.update(lost=False, lost_at=None, nurture_reason=None)
        entry_type = ActivityType.STATUS_CHANGE
        description = f"Reactivated from {old_label} to {target_stage.value}"
        old_value, new_value = old_label, target_stage.value

    elif kind is TransitionKind.CLOSED_LOST:
        target_stage = None
        changes.update(lost=True, lost_at=now)
        entry_type = ActivityType.STAGE_MOVE
        description = "Deal closed lost, moved to Dormant"
        old_value, new_value = old_label, Stage.CLOSED_LOST.value

    else:  # TransitionKind.CONVERT
        target_stage = Stage.CLOSED_WON
        entry_type = ActivityType.CONVERSION
        description = "Deal closed won, converted to client"
        old_value, new_value = old_label, Stage.CLOSED_WON.value

    if target is not Pool.ACTIVE_DEAL and target is not Pool.CONVERTED:
        target_stage = None

    if target is not source:
        changes["pool_entered_at"] = now
    if target_stage is not opportunity.stage:
        changes["stage_entered_at"] = now

    if (
        kind in (TransitionKind.STAGE_MOVE, TransitionKind.REACTIVATE)
        and target_stage in SYNC_STAGES
    ):
        sync_job_title = f"Prospect ({target_stage.value})"

    if kind is not TransitionKind.NOTE:
        description = _with_note(description, request.note)

    entry = activity.new_entry(entry_type, description, old_value, new_value, now=now)

    return TransitionPlan(
        kind=kind,
        source_pool=source,
        target_pool=target,
        target_stage=target_stage,
        score=next_score(opportunity.score, kind, target_stage),
        entry=entry,
        changes=changes,
        sync_job_title=sync_job_title,
    )
