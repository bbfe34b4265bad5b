"""Customer emitter -- the must-succeed write path of a Closed Won conversion.

Customers are keyed by an idempotency key derived from the source
opportunity, so a retried conversion overwrites the customer the first
attempt created with its fresher fields instead of writing a second one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from src.agency.pipeline.schemas import CustomerCreate
from src.agency.store.adapter import RecordExistsError, RecordStore, RecordStoreError

logger = structlog.get_logger(__name__)

CLIENTS_COLLECTION = "clients"


class CustomerEmitterError(Exception):
    """The customer record could not be written."""


class CustomerEmitter(ABC):
    """Creates durable customer records."""

    @abstractmethod
    async def create_customer(self, fields: CustomerCreate, idempotency_key: str) -> str:
        """Create a customer and return its id.

        Calling again with the same ``idempotency_key`` replaces the fields
        of the customer already created for it and returns the same id.

        Raises:
            CustomerEmitterError: The customer was not written.
        """
        ...


def customer_id_for(idempotency_key: str) -> str:
    return f"opp-{idempotency_key}"


class StoreCustomerEmitter(CustomerEmitter):
    """CustomerEmitter writing to the record store's ``clients`` collection."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def create_customer(self, fields: CustomerCreate, idempotency_key: str) -> str:
        customer_id = customer_id_for(idempotency_key)
        try:
            record = await self._store.create(
                CLIENTS_COLLECTION,
                fields.model_dump(mode="json"),
                record_id=customer_id,
            )
        except RecordExistsError:
            return await self._refresh(customer_id, fields)
        except RecordStoreError as exc:
            raise CustomerEmitterError(f"Failed to create customer {customer_id}") from exc

        logger.info(
            "customer.created",
            customer_id=record.id,
            source_opportunity_id=fields.source_opportunity_id,
        )
        return record.id

    async def _refresh(self, customer_id: str, fields: CustomerCreate) -> str:
        try:
            await self._store.update(
                CLIENTS_COLLECTION, customer_id, fields.model_dump(mode="json")
            )
        except RecordStoreError as exc:
            raise CustomerEmitterError(f"Failed to refresh customer {customer_id}") from exc

        logger.info(
            "customer.refreshed",
            customer_id=customer_id,
            activities=len(fields.activities),
        )
        return customer_id
