from __future__ import annotations

from typing import Any


class ShelfError(Exception):
    """Base for every error an operation reports back to its caller."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.audit_event_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "error": self.kind}


class Unauthenticated(ShelfError):
    kind = "unauthenticated"
    status_code = 401


class Unauthorized(ShelfError):
    kind = "unauthorized"
    status_code = 403


class NotFound(ShelfError):
    kind = "not_found"
    status_code = 404


class Conflict(ShelfError):
    kind = "conflict"
    status_code = 409


class ValidationFailed(ShelfError):
    kind = "validation"
    status_code = 422

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["field"] = self.field
        return payload


class CatalogUnavailable(ShelfError):
    kind = "catalog_unavailable"
    status_code = 502
