from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from shelf.authz import Operation, enforce, require_member
from shelf.constants import (
    BLURB_MAX_LENGTH,
    DEFAULT_ADMIN_EMAILS,
    GENRES_MIN_COUNT,
    LINK_MAX_LENGTH,
    PUBLIC_LIST_LIMIT,
    ROLES,
    TITLE_MAX_LENGTH,
)
from shelf.errors import NotFound, ValidationFailed
from shelf.genres import FILTER_AND, FILTER_OR, filter_by_genres, normalize_genres
from shelf.listing import enrich, order_recommendations
from shelf.models import (
    AuditEvent,
    MarkStaffPickResponse,
    Recommendation,
    RecommendationInput,
    RecommendationView,
    SeedResult,
    User,
)
from shelf.repository import ShelfRepository
from shelf.seed import build_seed_rows

LOGGER = logging.getLogger("hypeshelf.shelf")

_URL_ADAPTER = TypeAdapter(AnyUrl)


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def validate_recommendation(payload: RecommendationInput) -> dict[str, Any]:
    """Check field constraints and return the cleaned values to store.

    Raises ``ValidationFailed`` naming the first field that breaks a rule.
    """
    title = payload.title.strip()
    if not title:
        raise ValidationFailed("title", "Title is required")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationFailed("title", f"Title must be {TITLE_MAX_LENGTH} characters or less")

    genres = normalize_genres(payload.genres)
    if len(genres) < GENRES_MIN_COUNT:
        raise ValidationFailed("genres", f"At least {GENRES_MIN_COUNT} genre is required")

    blurb = _optional_text(payload.blurb)
    if blurb is not None and len(blurb) > BLURB_MAX_LENGTH:
        raise ValidationFailed("blurb", f"Blurb must be {BLURB_MAX_LENGTH} characters or less")

    link = _optional_text(payload.link)
    if link is not None:
        if len(link) > LINK_MAX_LENGTH:
            raise ValidationFailed("link", f"Link must be {LINK_MAX_LENGTH} characters or less")
        try:
            _URL_ADAPTER.validate_python(link)
        except PydanticValidationError as exc:
            raise ValidationFailed("link", "Link must be a valid URL") from exc

    return {
        "title": title,
        "genres": genres,
        "link": link,
        "blurb": blurb,
        "poster_url": _optional_text(payload.poster_url),
        "external_id": payload.external_id,
    }


class ShelfService:
    """Recommendation board operations.

    Every method that takes ``subject`` treats it as the verified identity of
    the caller (None when unauthenticated) and runs the authorization guard
    before touching state.
    """

    def __init__(
        self,
        repository: ShelfRepository,
        *,
        admin_emails: Iterable[str] = DEFAULT_ADMIN_EMAILS,
    ) -> None:
        self.repository = repository
        self.admin_emails = {email.strip().lower() for email in admin_emails if email.strip()}

    def _caller(self, subject: str | None) -> User | None:
        if not subject:
            return None
        return self.repository.get_user_by_subject(subject)

    def _get_or_raise(self, recommendation_id: str) -> Recommendation:
        recommendation = self.repository.get_recommendation(recommendation_id)
        if recommendation is None:
            raise NotFound("Recommendation not found")
        return recommendation

    def _views(self, recommendations: Sequence[Recommendation]) -> list[RecommendationView]:
        users = self.repository.get_users_by_subjects(
            [recommendation.owner_subject for recommendation in recommendations]
        )
        return enrich(recommendations, users)

    # Reads

    def list_public(self) -> list[RecommendationView]:
        ordered = order_recommendations(self.repository.list_active_recommendations())
        return self._views(ordered[:PUBLIC_LIST_LIMIT])

    def list_all(
        self,
        subject: str | None,
        *,
        genres: Sequence[str] | None = None,
        filter_mode: str | None = None,
    ) -> list[RecommendationView]:
        enforce(Operation.LIST_ALL, subject, self._caller(subject))
        mode = (filter_mode or FILTER_OR).upper()
        if mode not in (FILTER_AND, FILTER_OR):
            raise ValidationFailed("filter_mode", "Filter mode must be AND or OR")
        records = filter_by_genres(
            self.repository.list_active_recommendations(),
            normalize_genres(genres or []),
            mode,
        )
        return self._views(order_recommendations(records))

    def get_by_id(self, recommendation_id: str) -> RecommendationView | None:
        recommendation = self.repository.get_recommendation(recommendation_id)
        if recommendation is None or recommendation.is_archived:
            return None
        return self._views([recommendation])[0]

    def list_genres(self) -> list[str]:
        return self.repository.list_genres()

    def current_user(self, subject: str | None) -> User | None:
        enforce(Operation.VIEW_SELF, subject, None)
        user = self._caller(subject)
        if user is None or user.is_archived:
            return None
        return user

    # Recommendation mutations

    def create_recommendation(self, subject: str | None, payload: RecommendationInput) -> str:
        enforce(Operation.CREATE, subject, None)
        fields = validate_recommendation(payload)
        recommendation_id = self.repository.insert_recommendation(owner_subject=subject, **fields)
        LOGGER.info(
            json.dumps(
                {
                    "event": "recommendation_created",
                    "recommendation_id": recommendation_id,
                    "owner_subject": subject,
                    "genres": fields["genres"],
                }
            )
        )
        return recommendation_id

    def update_recommendation(
        self,
        subject: str | None,
        recommendation_id: str,
        payload: RecommendationInput,
    ) -> None:
        caller = self._caller(subject)
        require_member(subject, caller)
        target = self._get_or_raise(recommendation_id)
        enforce(Operation.UPDATE, subject, caller, owner_subject=target.owner_subject)
        fields = validate_recommendation(payload)
        self.repository.update_recommendation(recommendation_id, **fields)

    def remove_recommendation(self, subject: str | None, recommendation_id: str) -> None:
        caller = self._caller(subject)
        require_member(subject, caller)
        target = self._get_or_raise(recommendation_id)
        enforce(Operation.REMOVE, subject, caller, owner_subject=target.owner_subject)
        outcome = self.repository.archive_recommendation(recommendation_id)
        if outcome.cleared_staff_pick:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "staff_pick_cleared_on_archive",
                        "recommendation_id": recommendation_id,
                        "auth_subject": subject,
                    }
                )
            )

    # Staff Pick

    def mark_staff_pick(self, subject: str | None, recommendation_id: str) -> MarkStaffPickResponse:
        enforce(Operation.MARK_STAFF_PICK, subject, self._caller(subject))
        previous = self.repository.swap_staff_pick(recommendation_id)
        LOGGER.info(
            json.dumps(
                {
                    "event": "staff_pick_marked",
                    "recommendation_id": recommendation_id,
                    "previous_staff_pick_id": previous.id if previous else None,
                    "auth_subject": subject,
                }
            )
        )
        return MarkStaffPickResponse(previous_staff_pick=previous)

    def unmark_staff_pick(self, subject: str | None, recommendation_id: str) -> bool:
        enforce(Operation.UNMARK_STAFF_PICK, subject, self._caller(subject))
        changed = self.repository.clear_staff_pick(recommendation_id)
        if changed:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "staff_pick_unmarked",
                        "recommendation_id": recommendation_id,
                        "auth_subject": subject,
                    }
                )
            )
        return changed

    # Users

    def list_users(self, subject: str | None) -> list[User]:
        enforce(Operation.LIST_USERS, subject, self._caller(subject))
        return self.repository.list_users()

    def update_user_role(self, subject: str | None, user_id: str, role: str) -> None:
        enforce(Operation.UPDATE_USER_ROLE, subject, self._caller(subject))
        if role not in ROLES:
            raise ValidationFailed("role", "Role must be 'user' or 'admin'")
        if not self.repository.update_user_role(user_id, role):
            raise NotFound("User not found")

    def sync_user(self, subject: str, email: str, name: str | None) -> User:
        previous = self.repository.get_user_by_subject(subject)
        user = self.repository.upsert_user(
            subject=subject,
            email=email,
            name=name,
            allow_listed=email.strip().lower() in self.admin_emails,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "user_synced",
                    "subject": subject,
                    "role": user.role,
                    "previous_role": previous.role if previous else None,
                }
            )
        )
        return user

    def archive_user(self, subject: str) -> int | None:
        archived = self.repository.archive_user(subject)
        LOGGER.info(
            json.dumps(
                {
                    "event": "user_archived",
                    "subject": subject,
                    "found": archived is not None,
                    "recommendations_archived": archived or 0,
                }
            )
        )
        return archived

    # Admin tooling

    def seed(self, subject: str | None) -> SeedResult:
        enforce(Operation.SEED, subject, self._caller(subject))
        count = self.repository.seed_recommendations(build_seed_rows())
        if count == 0:
            return SeedResult(message="Database already seeded", count=0)
        return SeedResult(message="Database seeded successfully", count=count)

    def list_audit_events(
        self,
        subject: str | None,
        *,
        limit: int,
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        enforce(Operation.LIST_AUDIT_EVENTS, subject, self._caller(subject))
        return self.repository.list_audit_events(limit=limit, action=action, status=status)
