"""Payments workflow -- status changes on billing alerts.

Every action goes through the alert sink, which commits package
bookkeeping (received amount, milestone status) together with the alert
change, version-checked on both records. Store failures surface here as
PaymentError.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.agency.billing.alerts import BillingAlertSink
from src.agency.billing.errors import PaymentError
from src.agency.billing.schemas import AlertStatus, BillingAlert
from src.agency.store.adapter import RecordStoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PaymentsService:
    """Applies payment-status actions to billing alerts.

    Args:
        sink: Billing alert sink that owns the bookkeeping commit.
    """

    def __init__(self, sink: BillingAlertSink) -> None:
        self._sink = sink

    async def list_alerts(
        self,
        status: AlertStatus | None = None,
        client_id: str | None = None,
    ) -> list[BillingAlert]:
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = status.value
        if client_id is not None:
            filters["client_id"] = client_id
        return await self._sink.list_alerts(filters or None)

    async def mark_received(self, alert_id: str) -> BillingAlert:
        """Record payment: alert received, package amount and milestone updated."""
        return await self._change(alert_id, AlertStatus.RECEIVED, "received")

    async def mark_pending(self, alert_id: str) -> BillingAlert:
        return await self._change(alert_id, AlertStatus.PENDING, "pending")

    async def mark_waiting(self, alert_id: str) -> BillingAlert:
        return await self._change(alert_id, AlertStatus.WAITING, "waiting")

    async def undo_received(self, alert_id: str) -> BillingAlert:
        """Reverse a received payment: alert back to due, bookkeeping reversed."""
        return await self._change(alert_id, AlertStatus.DUE, "undo")

    async def delete_alert(self, alert_id: str) -> None:
        """Delete an alert, reversing package bookkeeping first if it was received."""
        await self._apply(alert_id, "delete", lambda: self._sink.delete(alert_id))

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _change(self, alert_id: str, status: AlertStatus, action: str) -> BillingAlert:
        return await self._apply(
            alert_id, action, lambda: self._sink.update_status(alert_id, status)
        )

    async def _apply(
        self,
        alert_id: str,
        action: str,
        write: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            result = await write()
        except RecordStoreError as exc:
            logger.error("payment.update_failed", alert_id=alert_id, action=action, error=str(exc))
            raise PaymentError(f"Could not apply {action} to alert {alert_id}: {exc}") from exc

        logger.info("payment.updated", alert_id=alert_id, action=action)
        return result
