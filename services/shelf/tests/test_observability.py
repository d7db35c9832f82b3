from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from shelf.catalog import MovieCatalog
from shelf.main import create_app

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "shelf.sqlite3"
    app = create_app(database_path=str(db_path), catalog=MovieCatalog(None))
    with TestClient(app) as test_client:
        yield test_client


def test_request_id_header_and_metrics_snapshot(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/recommendations/public")
    unauthenticated = client.get("/recommendations")
    metrics = client.get("/metrics")

    assert first.status_code == 200
    assert second.status_code == 200
    assert unauthenticated.status_code == 401
    assert metrics.status_code == 200

    first_request_id = first.headers.get("x-request-id")
    second_request_id = second.headers.get("x-request-id")
    assert first_request_id
    assert second_request_id
    assert first_request_id != second_request_id
    assert unauthenticated.headers.get("x-request-id")

    body = metrics.json()
    assert body["totals"]["requests"] >= 3
    assert body["totals"]["errors"] >= 1
    assert body["endpoints"]["GET /recommendations"]["4xx"] == 1
    assert body["endpoints"]["GET /recommendations/public"]["count"] == 1


def test_incoming_request_id_is_preserved_and_audited(client: TestClient) -> None:
    response = client.post(
        "/recommendations",
        headers={"x-request-id": "manual-request-id"},
        json={"title": "Alien", "genres": ["Horror"]},
    )
    assert response.status_code == 401
    assert response.headers.get("x-request-id") == "manual-request-id"
    assert response.headers.get("x-audit-event-id")


def test_metrics_are_keyed_by_route_template(client: TestClient) -> None:
    for recommendation_id in ("first-id", "second-id", "third-id"):
        assert client.get(f"/recommendations/{recommendation_id}").status_code == 404
    client.get("/no-such-page")
    client.get("/another-missing-page")

    endpoints = client.get("/metrics").json()["endpoints"]

    assert endpoints["GET /recommendations/{recommendation_id}"]["count"] == 3
    assert endpoints["GET /recommendations/{recommendation_id}"]["4xx"] == 3
    assert endpoints["GET <unmatched>"]["count"] == 2
    assert not any("first-id" in key or "no-such-page" in key for key in endpoints)
