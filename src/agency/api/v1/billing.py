"""REST API endpoints for packages, work units, and billing alerts.

Completing a work unit runs the milestone engine; the response carries the
alerts that completion emitted. Payment actions (received, pending,
waiting, undo, delete) operate on billing alerts and keep package
bookkeeping in step.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from src.agency.billing.errors import (
    AlertNotFoundError,
    BillingError,
    InvalidLineItemError,
    MilestoneBatchError,
    PackageNotFoundError,
    PaymentError,
    WorkUnitNotFoundError,
)
from src.agency.billing.packages import PackageCreated
from src.agency.billing.schemas import (
    AlertStatus,
    BillingAlert,
    Package,
    PackageCreate,
    WorkUnit,
    WorkUnitCreate,
)
from src.agency.billing.work_units import CompletionResult
from src.agency.store.adapter import RecordStoreError

router = APIRouter(prefix="/billing", tags=["billing"])


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_service(request: Request, name: str) -> Any:
    """Retrieve a billing service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing not initialized",
        )
    return service


def _raise_for(exc: Exception) -> None:
    """Translate a billing or store error into the matching HTTP error."""
    if isinstance(exc, (PackageNotFoundError, WorkUnitNotFoundError, AlertNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidLineItemError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, (MilestoneBatchError, PaymentError, RecordStoreError)):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(exc)) from exc


# ── Package Endpoints ────────────────────────────────────────────────────────


@router.post("/packages", response_model=PackageCreated, status_code=201)
async def create_package(body: PackageCreate, request: Request) -> PackageCreated:
    """Create a package with its milestones and opening alerts."""
    service = _get_service(request, "package_service")
    try:
        return await service.create_package(body)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


@router.get("/packages", response_model=list[Package])
async def list_packages(
    request: Request,
    client_id: str | None = Query(default=None, description="Filter by client ID"),
) -> list[Package]:
    """List packages, optionally for one client."""
    service = _get_service(request, "package_service")
    try:
        return await service.list_packages(client_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


@router.get("/packages/{package_id}", response_model=Package)
async def get_package(package_id: str, request: Request) -> Package:
    """Get a single package by ID."""
    service = _get_service(request, "package_service")
    try:
        return await service.get_package(package_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


# ── Work Unit Endpoints ──────────────────────────────────────────────────────


@router.post("/work-units", response_model=WorkUnit, status_code=201)
async def create_work_unit(body: WorkUnitCreate, request: Request) -> WorkUnit:
    """Create a work unit, optionally linked to a package line item."""
    service = _get_service(request, "work_unit_service")
    try:
        return await service.create_work_unit(body)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


@router.get("/work-units/{unit_id}", response_model=WorkUnit)
async def get_work_unit(unit_id: str, request: Request) -> WorkUnit:
    service = _get_service(request, "work_unit_service")
    try:
        return await service.get_work_unit(unit_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


@router.post("/work-units/{unit_id}/complete", response_model=CompletionResult)
async def complete_work_unit(unit_id: str, request: Request) -> CompletionResult:
    """Mark a work unit Finished and evaluate its package milestones."""
    service = _get_service(request, "work_unit_service")
    try:
        return await service.complete_work_unit(unit_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


# ── Billing Alert Endpoints ──────────────────────────────────────────────────


@router.get("/alerts", response_model=list[BillingAlert])
async def list_alerts(
    request: Request,
    alert_status: AlertStatus | None = Query(default=None, alias="status"),
    client_id: str | None = Query(default=None, description="Filter by client ID"),
) -> list[BillingAlert]:
    """List billing alerts, newest first."""
    service = _get_service(request, "payments_service")
    try:
        return await service.list_alerts(status=alert_status, client_id=client_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)


_ACTIONS = {
    "received": "mark_received",
    "pending": "mark_pending",
    "waiting": "mark_waiting",
    "undo": "undo_received",
}


@router.post("/alerts/{alert_id}/{action}", response_model=BillingAlert)
async def change_alert_status(alert_id: str, action: str, request: Request) -> BillingAlert:
    """Apply a payment action: received, pending, waiting, or undo."""
    service = _get_service(request, "payments_service")
    method_name = _ACTIONS.get(action)
    if method_name is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown payment action: {action}",
        )
    try:
        alert = await getattr(service, method_name)(alert_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)
    return alert


@router.delete("/alerts/{alert_id}", status_code=204)
async def delete_alert(alert_id: str, request: Request) -> Response:
    """Delete an alert, reversing received bookkeeping first."""
    service = _get_service(request, "payments_service")
    try:
        await service.delete_alert(alert_id)
    except (BillingError, RecordStoreError) as exc:
        _raise_for(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
