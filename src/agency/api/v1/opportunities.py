"""REST API endpoints for the opportunity pipeline.

Provides create/read/list endpoints per pool and the single transition
endpoint that drives every pool and stage change. The Google access token
used for contact sync travels in the X-Google-Access-Token header, not in
the request body.

Error mapping: 404 not found, 409 invalid transition, 502 conversion
failure, 503 persistence failure.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.agency.pipeline.activity import newest_first
from src.agency.pipeline.errors import (
    ConversionFailure,
    InvalidTransitionError,
    OpportunityNotFoundError,
    PersistenceFailure,
    TransitionError,
)
from src.agency.pipeline.schemas import (
    LIVE_POOLS,
    ContactMethod,
    Opportunity,
    OpportunityCreate,
    OutreachStatus,
    Pool,
    Stage,
    TransitionRequest,
)

router = APIRouter(prefix="/opportunities", tags=["opportunities"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ActivityResponse(BaseModel):
    """One activity log line, serialized for display."""

    id: str
    timestamp: str
    type: str
    description: str
    old_value: str | None = None
    new_value: str | None = None


class OpportunityResponse(BaseModel):
    """Response for opportunity data; activities are newest-first."""

    id: str
    display_name: str
    organization: str | None = None
    contact_methods: list[dict[str, str]] = Field(default_factory=list)
    pool: str
    stage: str | None = None
    score: int = 0
    value: float | None = None
    outreach_status: str
    attempt_count: int = 0
    last_contacted_at: str | None = None
    nurture_reason: str | None = None
    lost: bool = False
    google_resource_name: str | None = None
    created_at: str | None = None
    activities: list[ActivityResponse] = Field(default_factory=list)


class TransitionResponse(BaseModel):
    """Outcome of a transition; ``opportunity`` is null after conversion."""

    kind: str
    pool: str
    opportunity: OpportunityResponse | None = None
    customer_id: str | None = None
    sync_scheduled: bool = False


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateOpportunityRequest(BaseModel):
    """Request body for adding a lead to the Prospect pool."""

    display_name: str = Field(min_length=1)
    organization: str | None = None
    contact_methods: list[ContactMethod] = Field(default_factory=list)
    value: float | None = None


class TransitionBody(BaseModel):
    """Request body for a pool, stage, or outreach change (all optional)."""

    pool: Pool | None = None
    stage: Stage | None = None
    outreach: OutreachStatus | None = None
    note: str | None = None
    reason: str | None = None


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_stage_machine(request: Request) -> Any:
    """Retrieve OpportunityStageMachine from app.state, 503 if not available."""
    machine = getattr(request.app.state, "stage_machine", None)
    if machine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return machine


def _raise_for(exc: TransitionError) -> None:
    """Translate a TransitionError into the matching HTTP error."""
    if isinstance(exc, OpportunityNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ConversionFailure):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, PersistenceFailure):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(exc)) from exc


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _opportunity_to_response(opp: Opportunity) -> OpportunityResponse:
    """Convert Opportunity to OpportunityResponse."""
    return OpportunityResponse(
        id=opp.id,
        display_name=opp.display_name,
        organization=opp.organization,
        contact_methods=[{"type": m.type.value, "value": m.value} for m in opp.contact_methods],
        pool=opp.pool.value,
        stage=opp.stage.value if opp.stage else None,
        score=opp.score,
        value=opp.value,
        outreach_status=opp.outreach_status.value,
        attempt_count=opp.attempt_count,
        last_contacted_at=opp.last_contacted_at.isoformat() if opp.last_contacted_at else None,
        nurture_reason=opp.nurture_reason,
        lost=opp.lost,
        google_resource_name=opp.google_resource_name,
        created_at=opp.created_at.isoformat() if opp.created_at else None,
        activities=[
            ActivityResponse(
                id=a.id,
                timestamp=a.timestamp.isoformat(),
                type=a.type.value,
                description=a.description,
                old_value=a.old_value,
                new_value=a.new_value,
            )
            for a in newest_first(opp.activities)
        ],
    )


# ── Opportunity Endpoints ────────────────────────────────────────────────────


@router.post("", response_model=OpportunityResponse, status_code=201)
async def create_opportunity(
    body: CreateOpportunityRequest,
    request: Request,
) -> OpportunityResponse:
    """Create a new opportunity in the Prospect pool."""
    machine = _get_stage_machine(request)
    data = OpportunityCreate(**body.model_dump())
    try:
        opp = await machine.create_opportunity(data)
    except TransitionError as exc:
        _raise_for(exc)
    return _opportunity_to_response(opp)


@router.get("", response_model=list[OpportunityResponse])
async def list_opportunities(
    request: Request,
    pool: Pool = Query(default=Pool.PROSPECT, description="Pool to list"),
) -> list[OpportunityResponse]:
    """List every opportunity in one pool, newest first."""
    machine = _get_stage_machine(request)
    if pool not in LIVE_POOLS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{pool.value} is not a live pool",
        )
    try:
        opps = await machine.list_pool(pool)
    except TransitionError as exc:
        _raise_for(exc)
    return [_opportunity_to_response(o) for o in opps]


@router.get("/{opportunity_id}", response_model=OpportunityResponse)
async def get_opportunity(
    opportunity_id: str,
    request: Request,
) -> OpportunityResponse:
    """Get a single opportunity from whichever pool holds it."""
    machine = _get_stage_machine(request)
    try:
        opp = await machine.get_opportunity(opportunity_id)
    except TransitionError as exc:
        _raise_for(exc)
    return _opportunity_to_response(opp)


@router.post("/{opportunity_id}/transitions", response_model=TransitionResponse)
async def transition_opportunity(
    opportunity_id: str,
    body: TransitionBody,
    request: Request,
    google_token: str | None = Header(default=None, alias="X-Google-Access-Token"),
) -> TransitionResponse:
    """Apply a pool, stage, outreach, or note change to an opportunity."""
    machine = _get_stage_machine(request)
    change = TransitionRequest(**body.model_dump(), sync_token=google_token)
    try:
        result = await machine.transition(opportunity_id, change)
    except TransitionError as exc:
        _raise_for(exc)

    return TransitionResponse(
        kind=result.kind.value,
        pool=result.pool.value,
        opportunity=(
            _opportunity_to_response(result.opportunity) if result.opportunity else None
        ),
        customer_id=result.customer_id,
        sync_scheduled=result.sync_scheduled,
    )
