"""Identity-provider webhook handling.

The provider posts ``user.created``, ``user.updated`` and ``user.deleted``
events. Created/updated events upsert the local user record; deleted events
archive the user together with their recommendations.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Literal

from pydantic import BaseModel, Field

from shelf.service import ShelfService

LOGGER = logging.getLogger("hypeshelf.shelf")

SIGNATURE_HEADER = "x-webhook-signature"

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"


class EmailAddress(BaseModel):
    id: str
    email_address: str


class IdentityUserData(BaseModel):
    id: str = Field(..., min_length=1)
    email_addresses: list[EmailAddress] = Field(default_factory=list)
    primary_email_address_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def primary_email(self) -> str:
        for address in self.email_addresses:
            if address.id == self.primary_email_address_id:
                return address.email_address
        return ""

    def display_name(self) -> str | None:
        names = (self.first_name, self.last_name)
        parts = [part.strip() for part in names if part and part.strip()]
        return " ".join(parts) or None


class IdentityEvent(BaseModel):
    type: str
    data: IdentityUserData


class WebhookResult(BaseModel):
    type: str
    outcome: Literal["synced", "archived", "ignored"]
    subject: str


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, body: bytes, signature: str | None) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature.strip())


def handle_identity_event(service: ShelfService, event: IdentityEvent) -> WebhookResult:
    subject = event.data.id
    if event.type in (USER_CREATED, USER_UPDATED):
        service.sync_user(subject, event.data.primary_email(), event.data.display_name())
        return WebhookResult(type=event.type, outcome="synced", subject=subject)
    if event.type == USER_DELETED:
        service.archive_user(subject)
        return WebhookResult(type=event.type, outcome="archived", subject=subject)

    LOGGER.info(json.dumps({"event": "identity_webhook_ignored", "type": event.type}))
    return WebhookResult(type=event.type, outcome="ignored", subject=subject)
