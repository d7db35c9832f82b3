"""Single place where caller permissions are decided.

Every operation that reads protected data or mutates state asks ``decide``
first. The caller's role always comes from the local user table, never from
the request.
"""

from __future__ import annotations

from enum import Enum

from shelf.constants import ROLE_ADMIN
from shelf.errors import Unauthenticated, Unauthorized
from shelf.models import User


class Decision(str, Enum):
    PERMITTED = "permitted"
    DENIED_UNAUTHENTICATED = "denied_unauthenticated"
    DENIED_UNAUTHORIZED = "denied_unauthorized"


class Operation(str, Enum):
    LIST_ALL = "list_all"
    VIEW_SELF = "view_self"
    CREATE = "recommendation_create"
    UPDATE = "recommendation_update"
    REMOVE = "recommendation_remove"
    MARK_STAFF_PICK = "staff_pick_mark"
    UNMARK_STAFF_PICK = "staff_pick_unmark"
    LIST_USERS = "users_list"
    UPDATE_USER_ROLE = "user_role_update"
    LIST_AUDIT_EVENTS = "audit_events_list"
    SEED = "seed"


# Identity is enough; the user record may not be synced yet.
AUTHENTICATION_ONLY = frozenset({Operation.LIST_ALL, Operation.VIEW_SELF, Operation.CREATE})

ADMIN_ONLY = frozenset(
    {
        Operation.UPDATE,
        Operation.REMOVE,
        Operation.MARK_STAFF_PICK,
        Operation.UNMARK_STAFF_PICK,
        Operation.LIST_USERS,
        Operation.UPDATE_USER_ROLE,
        Operation.LIST_AUDIT_EVENTS,
        Operation.SEED,
    }
)

OWNER_OVERRIDE = frozenset({Operation.UPDATE, Operation.REMOVE})


def decide(
    operation: Operation,
    subject: str | None,
    caller: User | None,
    *,
    owner_subject: str | None = None,
) -> Decision:
    if not subject:
        return Decision.DENIED_UNAUTHENTICATED
    if operation in AUTHENTICATION_ONLY:
        return Decision.PERMITTED
    if caller is None or caller.is_archived or caller.subject != subject:
        return Decision.DENIED_UNAUTHORIZED
    if operation in ADMIN_ONLY and caller.role != ROLE_ADMIN:
        is_owner = owner_subject is not None and owner_subject == subject
        if not (operation in OWNER_OVERRIDE and is_owner):
            return Decision.DENIED_UNAUTHORIZED
    return Decision.PERMITTED


def require_member(subject: str | None, caller: User | None) -> None:
    """Identity and user-record checks, before any target is loaded."""
    if not subject:
        raise Unauthenticated("Not authenticated")
    if caller is None or caller.is_archived or caller.subject != subject:
        raise Unauthorized("User not found")


def enforce(
    operation: Operation,
    subject: str | None,
    caller: User | None,
    *,
    owner_subject: str | None = None,
) -> None:
    decision = decide(operation, subject, caller, owner_subject=owner_subject)
    if decision is Decision.DENIED_UNAUTHENTICATED:
        raise Unauthenticated("Not authenticated")
    if decision is Decision.DENIED_UNAUTHORIZED:
        if caller is None or caller.is_archived:
            raise Unauthorized("User not found")
        if operation in OWNER_OVERRIDE:
            raise Unauthorized("You can only modify your own recommendations")
        raise Unauthorized("Admin access required")
