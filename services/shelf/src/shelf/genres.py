from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, TypeVar

from common.utils import normalize_whitespace

FILTER_AND = "AND"
FILTER_OR = "OR"


class Tagged(Protocol):
    genres: list[str]


T = TypeVar("T", bound=Tagged)


def normalize_genres(genres: Iterable[str]) -> list[str]:
    """Trim tags and drop blanks and repeats, keeping the order they were entered in."""
    seen: set[str] = set()
    normalized: list[str] = []
    for genre in genres:
        tag = normalize_whitespace(genre)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        normalized.append(tag)
    return normalized


def matches_genres(record_genres: Iterable[str], genres: Sequence[str], mode: str) -> bool:
    tags = set(record_genres)
    if mode == FILTER_AND:
        return all(genre in tags for genre in genres)
    return any(genre in tags for genre in genres)


def filter_by_genres(
    records: Sequence[T],
    genres: Sequence[str] | None,
    mode: str | None = None,
) -> list[T]:
    if not genres:
        return list(records)
    resolved_mode = mode or FILTER_OR
    if resolved_mode not in (FILTER_AND, FILTER_OR):
        raise ValueError(f"Unsupported filter mode: {mode}")
    return [record for record in records if matches_genres(record.genres, genres, resolved_mode)]
