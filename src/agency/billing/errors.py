"""Billing error taxonomy.

EngineError covers the milestone engine and work-unit completion; payment
status changes raise PaymentError subclasses.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing failures."""


class EngineError(BillingError):
    """Milestone engine could not process a completion report."""


class PackageNotFoundError(EngineError):
    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__(f"Package not found: {package_id}")


class WorkUnitNotFoundError(EngineError):
    def __init__(self, unit_id: str) -> None:
        self.unit_id = unit_id
        super().__init__(f"Work unit not found: {unit_id}")


class InvalidLineItemError(EngineError):
    """A work unit points at a line item index the package does not have."""


class MilestoneBatchError(EngineError):
    """Milestone updates and their alerts were not persisted; nothing landed.

    Not retried automatically. Reporting the same unit again re-runs the
    evaluation from fresh state.
    """

    def __init__(self, package_id: str, message: str) -> None:
        self.package_id = package_id
        super().__init__(message)


class PaymentError(BillingError):
    """A payment status change could not be applied."""


class AlertNotFoundError(PaymentError):
    def __init__(self, alert_id: str) -> None:
        self.alert_id = alert_id
        super().__init__(f"Billing alert not found: {alert_id}")
