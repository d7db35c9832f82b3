from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "admin"]
FilterMode = Literal["AND", "OR"]


class User(BaseModel):
    id: str
    subject: str = Field(..., description="Identity-provider subject id")
    email: str
    name: str | None = None
    role: Role
    is_archived: bool = False
    created_at: str
    updated_at: str


class Recommendation(BaseModel):
    id: str
    title: str
    genres: list[str]
    link: str | None = None
    blurb: str | None = None
    poster_url: str | None = None
    external_id: int | None = None
    owner_subject: str
    is_staff_pick: bool = False
    is_archived: bool = False
    created_at: str
    updated_at: str


class OwnerSummary(BaseModel):
    name: str
    email: str


class RecommendationView(Recommendation):
    user: OwnerSummary


class RecommendationInput(BaseModel):
    title: str = ""
    genres: list[str] = Field(default_factory=list)
    link: str | None = None
    blurb: str | None = None
    poster_url: str | None = None
    external_id: int | None = None


class CreateRecommendationResponse(BaseModel):
    id: str


class StaffPickRef(BaseModel):
    id: str
    title: str


class MarkStaffPickResponse(BaseModel):
    previous_staff_pick: StaffPickRef | None = None


class RoleUpdateRequest(BaseModel):
    role: Role


class SeedResult(BaseModel):
    message: str
    count: int


class AuditEvent(BaseModel):
    event_id: int
    request_id: str | None = None
    occurred_at: str
    method: str
    path: str
    action: str
    auth_subject: str | None = None
    status: str
    message: str | None = None


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class CatalogMovie(BaseModel):
    id: int
    title: str
    overview: str | None = None
    poster_path: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    release_date: str | None = None


class CatalogSuggestion(CatalogMovie):
    poster_url: str | None = None
    genres: list[str] = Field(default_factory=list)


class ExternalLinkResponse(BaseModel):
    movie_id: int
    link: str | None = None
