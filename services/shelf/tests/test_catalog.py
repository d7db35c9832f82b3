from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest
import shelf.catalog as catalog_module
from fastapi.testclient import TestClient
from shelf.catalog import MovieCatalog, map_genres, poster_url, to_suggestion
from shelf.errors import CatalogUnavailable
from shelf.main import create_app
from shelf.models import CatalogMovie


class StubResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubAsyncClient:
    def __init__(self, response: StubResponse, capture: dict[str, Any]) -> None:
        self.response = response
        self.capture = capture

    async def __aenter__(self) -> StubAsyncClient:
        return self

    async def __aexit__(self, *_: object) -> bool:
        return False

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> StubResponse:
        self.capture["method"] = method
        self.capture["url"] = url
        self.capture["params"] = params or {}
        return self.response


class ErroringAsyncClient:
    async def __aenter__(self) -> ErroringAsyncClient:
        return self

    async def __aexit__(self, *_: object) -> bool:
        return False

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> StubResponse:
        del method, params
        request = httpx.Request("GET", url)
        raise httpx.RequestError("connection failed", request=request)


def install_stub(
    monkeypatch: pytest.MonkeyPatch,
    response: StubResponse,
) -> dict[str, Any]:
    capture: dict[str, Any] = {}
    monkeypatch.setattr(
        catalog_module.httpx,
        "AsyncClient",
        lambda *args, **kwargs: StubAsyncClient(response, capture),
    )
    return capture


@pytest.mark.unit
def test_genre_mapping_folds_and_dedupes() -> None:
    assert map_genres([28, 12, 878, 99999]) == ["Action", "Sci-Fi"]
    assert map_genres([]) == []


@pytest.mark.unit
def test_poster_url_and_suggestion() -> None:
    assert poster_url(None) is None
    assert poster_url("/abc.jpg") == "https://image.tmdb.org/t/p/w500/abc.jpg"

    suggestion = to_suggestion(
        CatalogMovie(id=1, title="Alien", poster_path="/alien.jpg", genre_ids=[27, 878])
    )
    assert suggestion.poster_url == "https://image.tmdb.org/t/p/w500/alien.jpg"
    assert suggestion.genres == ["Horror", "Sci-Fi"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_search_returns_top_five(monkeypatch: pytest.MonkeyPatch) -> None:
    results = [{"id": index, "title": f"Film {index}", "genre_ids": [18]} for index in range(8)]
    capture = install_stub(monkeypatch, StubResponse(200, {"results": results}))
    catalog = MovieCatalog("tmdb-key", base_url="https://tmdb.test/3/")

    movies = await catalog.search_movies("film")

    assert [movie.id for movie in movies] == [0, 1, 2, 3, 4]
    assert capture["method"] == "GET"
    assert capture["url"] == "https://tmdb.test/3/search/movie"
    assert capture["params"]["api_key"] == "tmdb-key"
    assert capture["params"]["query"] == "film"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_search_short_circuits_without_query_or_key(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    capture = install_stub(monkeypatch, StubResponse(200, {"results": []}))

    assert await MovieCatalog("tmdb-key").search_movies("   ") == []
    assert await MovieCatalog(None).search_movies("alien") == []
    assert capture == {}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_search_maps_upstream_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    catalog = MovieCatalog("tmdb-key")

    install_stub(monkeypatch, StubResponse(503, {"status_message": "down"}))
    with pytest.raises(CatalogUnavailable, match="503"):
        await catalog.search_movies("alien")

    install_stub(monkeypatch, StubResponse(200, ValueError("not json")))
    with pytest.raises(CatalogUnavailable):
        await catalog.search_movies("alien")

    monkeypatch.setattr(
        catalog_module.httpx,
        "AsyncClient",
        lambda *args, **kwargs: ErroringAsyncClient(),
    )
    with pytest.raises(CatalogUnavailable):
        await catalog.search_movies("alien")


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"results": [{"id": 1}]},
        {"results": "not-a-list"},
        ["unexpected", "shape"],
    ],
)
async def test_search_rejects_malformed_results(
    monkeypatch: pytest.MonkeyPatch,
    payload: Any,
) -> None:
    install_stub(monkeypatch, StubResponse(200, payload))

    with pytest.raises(CatalogUnavailable, match="malformed results"):
        await MovieCatalog("tmdb-key").search_movies("alien")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_search_treats_null_results_as_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    install_stub(monkeypatch, StubResponse(200, {"results": None}))

    assert await MovieCatalog("tmdb-key").search_movies("alien") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_external_link(monkeypatch: pytest.MonkeyPatch) -> None:
    catalog = MovieCatalog("tmdb-key")

    capture = install_stub(monkeypatch, StubResponse(200, {"imdb_id": "tt0078748"}))
    assert await catalog.get_external_link(348) == "https://www.imdb.com/title/tt0078748/"
    assert capture["url"].endswith("/movie/348/external_ids")

    install_stub(monkeypatch, StubResponse(200, {"imdb_id": None}))
    assert await catalog.get_external_link(348) is None

    install_stub(monkeypatch, StubResponse(404, {}))
    assert await catalog.get_external_link(348) is None

    assert await MovieCatalog(None).get_external_link(348) is None


@pytest.mark.integration
def test_search_endpoint_reports_malformed_results_as_bad_gateway(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install_stub(monkeypatch, StubResponse(200, {"results": [{"id": 1}]}))
    app = create_app(
        database_path=str(tmp_path / "shelf.sqlite3"),
        catalog=MovieCatalog("tmdb-key"),
    )

    with TestClient(app) as client:
        response = client.get("/catalog/search", params={"q": "alien"})

    assert response.status_code == 502
    assert response.json() == {
        "detail": "Movie catalog returned malformed results",
        "error": "catalog_unavailable",
    }
