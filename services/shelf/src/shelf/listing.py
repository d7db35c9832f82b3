from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, TypeVar

from shelf.constants import (
    ANONYMOUS_NAME,
    DELETED_USER_NAME,
    SYSTEM_SUBJECT,
    TEAM_DISPLAY_NAME,
    TEAM_EMAIL,
)
from shelf.models import OwnerSummary, Recommendation, RecommendationView, User

TEAM_OWNER = OwnerSummary(name=TEAM_DISPLAY_NAME, email=TEAM_EMAIL)
DELETED_OWNER = OwnerSummary(name=DELETED_USER_NAME, email="")


class Orderable(Protocol):
    is_staff_pick: bool
    created_at: str


T = TypeVar("T", bound=Orderable)


def resolve_owner(owner_subject: str, users: Mapping[str, User]) -> OwnerSummary:
    if owner_subject == SYSTEM_SUBJECT:
        return TEAM_OWNER
    user = users.get(owner_subject)
    if user is None or user.is_archived:
        return DELETED_OWNER
    return OwnerSummary(name=user.name or ANONYMOUS_NAME, email=user.email)


def enrich(
    recommendations: Sequence[Recommendation],
    users: Mapping[str, User],
) -> list[RecommendationView]:
    return [
        RecommendationView(
            **recommendation.model_dump(),
            user=resolve_owner(recommendation.owner_subject, users),
        )
        for recommendation in recommendations
    ]


def order_recommendations(records: Sequence[T]) -> list[T]:
    """Staff Pick first, then newest first; equal timestamps keep input order."""
    by_newest = sorted(records, key=lambda record: record.created_at, reverse=True)
    # sorted() with reverse=True still keeps ties in input order.
    return sorted(by_newest, key=lambda record: not record.is_staff_pick)
