from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from shelf.errors import CatalogUnavailable
from shelf.models import CatalogMovie, CatalogSuggestion

LOGGER = logging.getLogger("hypeshelf.shelf")

DEFAULT_TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"
SEARCH_RESULT_LIMIT = 5

_MOVIE_LIST_ADAPTER = TypeAdapter(list[CatalogMovie])

# TMDb genre id -> board genre. Sub-genres fold into the closest tag.
TMDB_GENRE_MAP: dict[int, str] = {
    28: "Action",
    12: "Action",
    16: "Animation",
    35: "Comedy",
    80: "Thriller",
    99: "Documentary",
    18: "Drama",
    10751: "Other",
    14: "Fantasy",
    36: "Drama",
    27: "Horror",
    10402: "Other",
    9648: "Mystery",
    10749: "Romance",
    878: "Sci-Fi",
    10770: "Other",
    53: "Thriller",
    10752: "Action",
    37: "Action",
}


def poster_url(poster_path: str | None) -> str | None:
    if not poster_path:
        return None
    return f"{TMDB_IMAGE_BASE_URL}{poster_path}"


def map_genres(genre_ids: list[int]) -> list[str]:
    mapped: list[str] = []
    for genre_id in genre_ids:
        genre = TMDB_GENRE_MAP.get(genre_id)
        if genre and genre not in mapped:
            mapped.append(genre)
    return mapped


def to_suggestion(movie: CatalogMovie) -> CatalogSuggestion:
    return CatalogSuggestion(
        **movie.model_dump(),
        poster_url=poster_url(movie.poster_path),
        genres=map_genres(movie.genre_ids),
    )


class MovieCatalog:
    """Thin async client for the TMDb v3 API, used by the create/edit flow."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_TMDB_BASE_URL,
        timeout: float = 15,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return self.api_key is not None

    async def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(
                    method="GET",
                    url=f"{self.base_url}{path}",
                    params={"api_key": self.api_key, **params},
                )
        except httpx.RequestError as exc:
            LOGGER.warning(
                json.dumps({"event": "catalog_request_failed", "path": path, "error": str(exc)})
            )
            raise CatalogUnavailable("Movie catalog is unavailable") from exc

    async def search_movies(self, query: str) -> list[CatalogMovie]:
        if not query.strip():
            return []
        if not self.configured:
            LOGGER.warning(json.dumps({"event": "catalog_not_configured"}))
            return []

        response = await self._get(
            "/search/movie",
            {"query": query, "language": "en-US", "page": 1, "include_adult": "false"},
        )
        if response.status_code >= 400:
            raise CatalogUnavailable(f"Movie catalog error: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogUnavailable("Movie catalog returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise CatalogUnavailable("Movie catalog returned malformed results")
        try:
            movies = _MOVIE_LIST_ADAPTER.validate_python(payload.get("results") or [])
        except ValidationError as exc:
            raise CatalogUnavailable("Movie catalog returned malformed results") from exc
        return movies[:SEARCH_RESULT_LIMIT]

    async def get_external_link(self, movie_id: int) -> str | None:
        if not self.configured:
            return None
        response = await self._get(f"/movie/{movie_id}/external_ids", {})
        if response.status_code >= 400:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        imdb_id = payload.get("imdb_id") if isinstance(payload, dict) else None
        if not imdb_id:
            return None
        return f"https://www.imdb.com/title/{imdb_id}/"
