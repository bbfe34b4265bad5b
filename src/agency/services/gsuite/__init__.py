"""GSuite integration services for Google Contacts.

Provides the async-wrapped People API contact sync used by the pipeline,
authenticated with the caller's opaque OAuth access token.
"""

from src.agency.services.gsuite.contacts import (
    ContactPayload,
    ContactSync,
    ContactSyncError,
    GoogleContactsSync,
)

__all__ = [
    "ContactPayload",
    "ContactSync",
    "ContactSyncError",
    "GoogleContactsSync",
]
