from __future__ import annotations

import hmac
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager
from typing import TypeVar

from common.utils import now_utc_iso, split_csv
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from shelf.catalog import DEFAULT_TMDB_BASE_URL, MovieCatalog, to_suggestion
from shelf.constants import DEFAULT_ADMIN_EMAILS
from shelf.errors import ShelfError
from shelf.identity import (
    SIGNATURE_HEADER,
    IdentityEvent,
    WebhookResult,
    handle_identity_event,
    verify_signature,
)
from shelf.models import (
    AuditEvent,
    CatalogSuggestion,
    CreateRecommendationResponse,
    ExternalLinkResponse,
    MarkStaffPickResponse,
    MetricsSnapshot,
    RecommendationInput,
    RecommendationView,
    RoleUpdateRequest,
    SeedResult,
    User,
)
from shelf.repository import ShelfRepository
from shelf.service import ShelfService

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "hypeshelf", "shelf.sqlite3")
SUBJECT_HEADER = "x-auth-subject"
GATEWAY_KEY_HEADER = "x-api-key"
UNMATCHED_ROUTE = "<unmatched>"
LOGGER = logging.getLogger("hypeshelf.shelf")

T = TypeVar("T")


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def route_template(request: Request) -> str:
    """Path pattern of the matched route, so ids do not fan out metric keys."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def resolve_subject(request: Request) -> str | None:
    """Verified caller subject forwarded by the auth gateway, if any."""
    subject = (request.headers.get(SUBJECT_HEADER) or "").strip()
    if not subject:
        return None
    gateway_key: str | None = request.app.state.gateway_key
    if gateway_key:
        provided = request.headers.get(GATEWAY_KEY_HEADER, "")
        if not hmac.compare_digest(provided, gateway_key):
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "untrusted_subject_header",
                        "request_id": getattr(request.state, "request_id", None),
                        "path": request.url.path,
                    }
                )
            )
            return None
    return subject


def create_app(
    *,
    database_path: str | None = None,
    admin_emails: Iterable[str] | None = None,
    gateway_key: str | None = None,
    webhook_secret: str | None = None,
    catalog: MovieCatalog | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("SHELF_DB_PATH", DEFAULT_DB_PATH)
    if admin_emails is not None:
        resolved_admin_emails = list(admin_emails)
    else:
        raw_admin_emails = os.getenv("SHELF_ADMIN_EMAILS", "").strip()
        resolved_admin_emails = (
            split_csv(raw_admin_emails) if raw_admin_emails else list(DEFAULT_ADMIN_EMAILS)
        )
    resolved_gateway_key = (gateway_key or os.getenv("SHELF_GATEWAY_KEY", "")).strip() or None
    resolved_webhook_secret = (
        webhook_secret or os.getenv("SHELF_WEBHOOK_SECRET", "")
    ).strip() or None
    resolved_catalog = catalog or MovieCatalog(
        os.getenv("SHELF_TMDB_API_KEY"),
        base_url=os.getenv("SHELF_TMDB_BASE_URL", DEFAULT_TMDB_BASE_URL),
    )

    repository = ShelfRepository(database_path=resolved_path)
    service = ShelfService(repository, admin_emails=resolved_admin_emails)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.service = service
        app.state.gateway_key = resolved_gateway_key
        app.state.webhook_secret = resolved_webhook_secret
        app.state.catalog = resolved_catalog
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="HypeShelf", version="0.3.0", lifespan=lifespan)

    async def write_audit_event(
        request: Request,
        *,
        action: str,
        status: str,
        message: str | None = None,
        auth_subject: str | None = None,
    ) -> int:
        return await run_in_threadpool(
            request.app.state.service.repository.record_audit_event,
            request_id=getattr(request.state, "request_id", None),
            method=request.method,
            path=request.url.path,
            action=action,
            auth_subject=auth_subject,
            status=status,
            message=message,
        )

    async def audited(
        request: Request,
        response: Response,
        *,
        action: str,
        subject: str | None,
        message: str,
        call: Callable[[], T],
    ) -> T:
        try:
            result = await run_in_threadpool(call)
        except ShelfError as exc:
            exc.audit_event_id = await write_audit_event(
                request,
                action=action,
                status=exc.kind,
                message=f"{message}; error={exc.message}",
                auth_subject=subject,
            )
            raise
        event_id = await write_audit_event(
            request,
            action=action,
            status="ok",
            message=message,
            auth_subject=subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return result

    @app.exception_handler(ShelfError)
    async def shelf_error_handler(request: Request, exc: ShelfError) -> JSONResponse:
        LOGGER.info(
            json.dumps(
                {
                    "event": "operation_rejected",
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "error": exc.kind,
                    "detail": exc.message,
                }
            )
        )
        headers: dict[str, str] = {}
        if exc.audit_event_id is not None:
            headers["x-audit-event-id"] = str(exc.audit_event_id)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_payload(),
            headers=headers,
        )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=route_template(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=route_template(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "route": route_template(request),
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                }
            )
        )
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "shelf"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/genres", response_model=list[str])
    async def list_genres(request: Request) -> list[str]:
        return await run_in_threadpool(request.app.state.service.list_genres)

    @app.get("/recommendations/public", response_model=list[RecommendationView])
    async def list_public(request: Request) -> list[RecommendationView]:
        return await run_in_threadpool(request.app.state.service.list_public)

    @app.get("/recommendations", response_model=list[RecommendationView])
    async def list_all(
        request: Request,
        genres: list[str] | None = Query(default=None),
        filter_mode: str | None = None,
    ) -> list[RecommendationView]:
        return await run_in_threadpool(
            request.app.state.service.list_all,
            resolve_subject(request),
            genres=genres,
            filter_mode=filter_mode,
        )

    @app.get("/recommendations/{recommendation_id}", response_model=RecommendationView)
    async def get_recommendation(recommendation_id: str, request: Request) -> RecommendationView:
        recommendation = await run_in_threadpool(
            request.app.state.service.get_by_id,
            recommendation_id,
        )
        if recommendation is None:
            raise HTTPException(status_code=404, detail="Unknown recommendation_id")
        return recommendation

    @app.post("/recommendations", response_model=CreateRecommendationResponse)
    async def create_recommendation(
        payload: RecommendationInput,
        request: Request,
        response: Response,
    ) -> CreateRecommendationResponse:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        recommendation_id = await audited(
            request,
            response,
            action="recommendation_create",
            subject=subject,
            message=f"title={payload.title[:40]}",
            call=lambda: service.create_recommendation(subject, payload),
        )
        return CreateRecommendationResponse(id=recommendation_id)

    @app.put("/recommendations/{recommendation_id}")
    async def update_recommendation(
        recommendation_id: str,
        payload: RecommendationInput,
        request: Request,
        response: Response,
    ) -> dict[str, bool]:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        await audited(
            request,
            response,
            action="recommendation_update",
            subject=subject,
            message=f"recommendation_id={recommendation_id}",
            call=lambda: service.update_recommendation(subject, recommendation_id, payload),
        )
        return {"updated": True}

    @app.delete("/recommendations/{recommendation_id}")
    async def remove_recommendation(
        recommendation_id: str,
        request: Request,
        response: Response,
    ) -> dict[str, bool]:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        await audited(
            request,
            response,
            action="recommendation_remove",
            subject=subject,
            message=f"recommendation_id={recommendation_id}",
            call=lambda: service.remove_recommendation(subject, recommendation_id),
        )
        return {"archived": True}

    @app.post(
        "/recommendations/{recommendation_id}/staff-pick",
        response_model=MarkStaffPickResponse,
    )
    async def mark_staff_pick(
        recommendation_id: str,
        request: Request,
        response: Response,
    ) -> MarkStaffPickResponse:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        return await audited(
            request,
            response,
            action="staff_pick_mark",
            subject=subject,
            message=f"recommendation_id={recommendation_id}",
            call=lambda: service.mark_staff_pick(subject, recommendation_id),
        )

    @app.delete("/recommendations/{recommendation_id}/staff-pick")
    async def unmark_staff_pick(
        recommendation_id: str,
        request: Request,
        response: Response,
    ) -> dict[str, bool]:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        changed = await audited(
            request,
            response,
            action="staff_pick_unmark",
            subject=subject,
            message=f"recommendation_id={recommendation_id}",
            call=lambda: service.unmark_staff_pick(subject, recommendation_id),
        )
        return {"changed": changed}

    @app.get("/users/me", response_model=User | None)
    async def current_user(request: Request) -> User | None:
        return await run_in_threadpool(
            request.app.state.service.current_user,
            resolve_subject(request),
        )

    @app.get("/users", response_model=list[User])
    async def list_users(request: Request) -> list[User]:
        return await run_in_threadpool(
            request.app.state.service.list_users,
            resolve_subject(request),
        )

    @app.put("/users/{user_id}/role")
    async def update_user_role(
        user_id: str,
        payload: RoleUpdateRequest,
        request: Request,
        response: Response,
    ) -> dict[str, str]:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        await audited(
            request,
            response,
            action="user_role_update",
            subject=subject,
            message=f"user_id={user_id}; role={payload.role}",
            call=lambda: service.update_user_role(subject, user_id, payload.role),
        )
        return {"user_id": user_id, "role": payload.role}

    @app.post("/webhooks/identity", response_model=WebhookResult)
    async def identity_webhook(request: Request, response: Response) -> WebhookResult:
        body = await request.body()
        if not verify_signature(
            request.app.state.webhook_secret,
            body,
            request.headers.get(SIGNATURE_HEADER),
        ):
            event_id = await write_audit_event(
                request,
                action="identity_webhook",
                status="unauthenticated",
                message="invalid webhook signature",
            )
            raise HTTPException(
                status_code=401,
                detail="Invalid webhook signature",
                headers={"x-audit-event-id": str(event_id)},
            )
        try:
            event = IdentityEvent.model_validate_json(body)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail="Malformed identity event") from exc

        result = await run_in_threadpool(
            handle_identity_event,
            request.app.state.service,
            event,
        )
        event_id = await write_audit_event(
            request,
            action="identity_webhook",
            status="ok",
            message=f"type={result.type}; outcome={result.outcome}",
            auth_subject=result.subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return result

    @app.get("/catalog/search", response_model=list[CatalogSuggestion])
    async def catalog_search(
        request: Request,
        q: str = Query(default="", max_length=200),
    ) -> list[CatalogSuggestion]:
        movies = await request.app.state.catalog.search_movies(q)
        return [to_suggestion(movie) for movie in movies]

    @app.get("/catalog/movies/{movie_id}/link", response_model=ExternalLinkResponse)
    async def catalog_link(movie_id: int, request: Request) -> ExternalLinkResponse:
        link = await request.app.state.catalog.get_external_link(movie_id)
        return ExternalLinkResponse(movie_id=movie_id, link=link)

    @app.post("/admin/seed", response_model=SeedResult)
    async def seed_database(request: Request, response: Response) -> SeedResult:
        subject = resolve_subject(request)
        service: ShelfService = request.app.state.service
        return await audited(
            request,
            response,
            action="seed",
            subject=subject,
            message="seed recommendations",
            call=lambda: service.seed(subject),
        )

    @app.get("/audit-events", response_model=list[AuditEvent])
    async def list_audit_events(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        return await run_in_threadpool(
            request.app.state.service.list_audit_events,
            resolve_subject(request),
            limit=limit,
            action=action,
            status=status,
        )

    return app


app = create_app()