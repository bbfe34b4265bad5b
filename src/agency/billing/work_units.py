"""Work units -- tasks delivered for clients, feeding the milestone engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.agency.billing.engine import MilestoneTriggerEngine
from src.agency.billing.errors import (
    InvalidLineItemError,
    PackageNotFoundError,
    WorkUnitNotFoundError,
)
from src.agency.billing.schemas import (
    PACKAGES_COLLECTION,
    WORK_UNITS_COLLECTION,
    BillingAlert,
    Package,
    WorkUnit,
    WorkUnitCreate,
    WorkUnitStatus,
)
from src.agency.store.adapter import ConcurrentModificationError, RecordStore

logger = structlog.get_logger(__name__)


class CompletionResult(BaseModel):
    """A completed work unit and the alerts its completion emitted."""

    unit: WorkUnit
    alerts: list[BillingAlert] = Field(default_factory=list)
    already_done: bool = False


class WorkUnitService:
    """Creates work units and reports their completion to the milestone engine.

    Args:
        store: Record store holding work units and packages.
        engine: Milestone engine evaluated on every completion.
        conflict_retries: Attempts for the version-checked status write.
    """

    def __init__(
        self,
        store: RecordStore,
        engine: MilestoneTriggerEngine,
        conflict_retries: int = 5,
    ) -> None:
        self._store = store
        self._engine = engine
        self._conflict_retries = conflict_retries

    async def create_work_unit(self, data: WorkUnitCreate) -> WorkUnit:
        """Create a work unit, validating its package link.

        Raises:
            PackageNotFoundError: ``package_id`` does not exist.
            InvalidLineItemError: ``line_item_index`` is out of range.
        """
        if data.package_id is not None:
            record = await self._store.get(PACKAGES_COLLECTION, data.package_id)
            if record is None:
                raise PackageNotFoundError(data.package_id)
            package = Package.from_record(record)
            index = data.line_item_index
            if index is not None and index >= len(package.line_items):
                raise InvalidLineItemError(
                    f"Package {package.id} has no line item {index}"
                )

        unit = WorkUnit(
            id=str(uuid.uuid4()),
            client_id=data.client_id,
            client_name=data.client_name,
            service_name=data.service_name,
            package_id=data.package_id,
            line_item_index=data.line_item_index,
            total_amount=data.total_amount,
        )
        record = await self._store.create(WORK_UNITS_COLLECTION, unit.to_document(), unit.id)
        logger.info("work_unit.created", unit_id=unit.id, package_id=unit.package_id)
        return WorkUnit.from_record(record)

    async def get_work_unit(self, unit_id: str) -> WorkUnit:
        record = await self._store.get(WORK_UNITS_COLLECTION, unit_id)
        if record is None:
            raise WorkUnitNotFoundError(unit_id)
        return WorkUnit.from_record(record)

    async def complete_work_unit(self, unit_id: str) -> CompletionResult:
        """Mark a unit Finished and run the milestone engine for it.

        Completing a unit that is already done changes nothing new: the
        engine is re-run, and its ledger and stored milestone statuses make
        that a no-op unless an earlier batch failed to land.

        Raises:
            WorkUnitNotFoundError: ``unit_id`` does not exist.
            MilestoneBatchError: The unit is finished but the milestone
                batch did not persist; reporting again retries it.
        """
        already_done = False
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._conflict_retries),
            wait=wait_exponential(multiplier=0.01, max=0.2),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=True,
        ):
            with attempt:
                unit = await self.get_work_unit(unit_id)
                if unit.is_done:
                    already_done = True
                else:
                    now = datetime.now(timezone.utc)
                    record = await self._store.update(
                        WORK_UNITS_COLLECTION,
                        unit.id,
                        {
                            "status": WorkUnitStatus.FINISHED.value,
                            "completed_at": now.isoformat(),
                            "received_amount": unit.total_amount,
                        },
                        expected_version=unit.version,
                    )
                    unit = WorkUnit.from_record(record)

        alerts = await self._engine.report_unit_completed(
            unit.package_id, unit.line_item_index, unit.id
        )
        logger.info(
            "work_unit.completed",
            unit_id=unit.id,
            package_id=unit.package_id,
            already_done=already_done,
            alerts=len(alerts),
        )
        return CompletionResult(unit=unit, alerts=alerts, already_done=already_done)
