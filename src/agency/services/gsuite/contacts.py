"""Google Contacts sync via the People API.

The pipeline hands over an opaque OAuth access token obtained by the
employee's browser session; no refresh token or client secret is held here.

All Google API calls are wrapped in asyncio.to_thread() to avoid blocking
the event loop. Transient API errors (429, 5xx) are retried with tenacity;
anything else surfaces as ContactSyncError, which callers treat as a soft
failure.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

CONTACTS_SCOPES = ["https://www.googleapis.com/auth/contacts"]

PERSON_FIELDS = "names,emailAddresses,phoneNumbers,organizations"

_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class ContactSyncError(Exception):
    """External contact upsert failed; never fatal to a pipeline transition."""


class ContactPayload(BaseModel):
    """Contact fields pushed to the external address book.

    ``external_id`` is the resource name from a previous sync; when set the
    contact is updated in place instead of created.
    """

    name: str
    email: str | None = None
    phone: str | None = None
    organization: str | None = None
    role: str | None = None
    external_id: str | None = None


class ContactSync(ABC):
    """Best-effort upsert of a contact into a third-party address book."""

    @abstractmethod
    async def upsert_contact(self, token: str, contact: ContactPayload) -> str:
        """Create or update the contact and return its external id.

        Raises:
            ContactSyncError: On any failure.
        """
        ...


# ── Google People API ───────────────────────────────────────────────────────


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in _RETRYABLE_STATUSES


def _person_body(contact: ContactPayload) -> dict[str, Any]:
    given, _, family = contact.name.strip().partition(" ")
    body: dict[str, Any] = {
        "names": [{"givenName": given, "familyName": family.strip()}],
        "emailAddresses": [{"value": contact.email, "type": "work"}] if contact.email else [],
        "phoneNumbers": [{"value": contact.phone, "type": "mobile"}] if contact.phone else [],
        "organizations": [],
    }
    if contact.organization:
        body["organizations"] = [
            {"name": contact.organization, "title": contact.role or ""}
        ]
    return body


def _default_service_factory(token: str) -> Any:
    credentials = Credentials(token=token, scopes=CONTACTS_SCOPES)
    return build("people", "v1", credentials=credentials, cache_discovery=False)


class GoogleContactsSync(ContactSync):
    """ContactSync backed by the Google People API.

    Args:
        max_attempts: Attempts per API call for transient errors.
        service_factory: Builds a People API resource from an access token.
            Tests inject a fake here.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        service_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._max_attempts = max_attempts
        self._service_factory = service_factory or _default_service_factory

    async def upsert_contact(self, token: str, contact: ContactPayload) -> str:
        try:
            service = self._service_factory(token)
            resource_name = contact.external_id
            if resource_name is None and contact.phone:
                resource_name = await self._search_by_phone(service, contact.phone)

            if resource_name:
                await self._update(service, resource_name, contact)
                logger.info("contact_sync.updated", resource_name=resource_name)
                return resource_name

            resource_name = await self._create(service, contact)
            logger.info("contact_sync.created", resource_name=resource_name)
            return resource_name
        except HttpError as exc:
            raise ContactSyncError(
                f"People API error {exc.resp.status}: {exc.reason or exc}"
            ) from exc
        except ContactSyncError:
            raise
        except Exception as exc:
            raise ContactSyncError(f"Contact sync failed: {exc}") from exc

    # ── API calls ───────────────────────────────────────────────────────────

    async def _execute(self, request_fn: Callable[[], Any]) -> Any:
        """Run one blocking API call in a worker thread with transient retries."""

        @retry(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async def _call() -> Any:
            return await asyncio.to_thread(request_fn)

        return await _call()

    async def _search_by_phone(self, service: Any, phone: str) -> str | None:
        result = await self._execute(
            lambda: service.people()
            .searchContacts(query=phone, readMask="names,phoneNumbers,metadata")
            .execute()
        )
        matches = result.get("results") or []
        if not matches:
            return None
        return matches[0].get("person", {}).get("resourceName")

    async def _update(self, service: Any, resource_name: str, contact: ContactPayload) -> None:
        current = await self._execute(
            lambda: service.people()
            .get(resourceName=resource_name, personFields="metadata")
            .execute()
        )
        body = _person_body(contact)
        body["etag"] = current.get("etag")
        await self._execute(
            lambda: service.people()
            .updateContact(
                resourceName=resource_name,
                updatePersonFields=PERSON_FIELDS,
                body=body,
            )
            .execute()
        )

    async def _create(self, service: Any, contact: ContactPayload) -> str:
        result = await self._execute(
            lambda: service.people()
            .createContact(personFields=PERSON_FIELDS, body=_person_body(contact))
            .execute()
        )
        resource_name = result.get("resourceName")
        if not resource_name:
            raise ContactSyncError("People API returned no resourceName")
        return resource_name
