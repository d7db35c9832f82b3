from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from shelf.constants import SYSTEM_SUBJECT

SEED_RECOMMENDATIONS: list[dict[str, Any]] = [
    {
        "title": "The Shawshank Redemption",
        "genres": ["Drama"],
        "blurb": (
            "Two imprisoned men bond over a number of years, finding solace and eventual "
            "redemption through acts of common decency."
        ),
        "link": "https://www.imdb.com/title/tt0111161/",
        "poster_url": "https://image.tmdb.org/t/p/w500/9cqNxx0GxF0bflZmeSMuL5tnGzr.jpg",
        "is_staff_pick": True,
        "external_id": 278,
    },
    {
        "title": "Inception",
        "genres": ["Action", "Sci-Fi", "Thriller"],
        "blurb": (
            "A thief who steals corporate secrets through the use of dream-sharing "
            "technology is given the inverse task of planting an idea."
        ),
        "link": "https://www.imdb.com/title/tt1375666/",
        "poster_url": "https://image.tmdb.org/t/p/w500/ljsZTbVsrQSqZgWeep2B1QiDKuh.jpg",
        "is_staff_pick": False,
        "external_id": 27205,
    },
    {
        "title": "Everything Everywhere All at Once",
        "genres": ["Action", "Comedy", "Sci-Fi"],
        "blurb": (
            "A Chinese-American woman gets swept up in an insane adventure, where she "
            "alone can save the world by exploring other universes."
        ),
        "link": "https://www.imdb.com/title/tt6710474/",
        "poster_url": "https://image.tmdb.org/t/p/w500/w3LxiVYdWWRvEVdn5RYq6jIqkb1.jpg",
        "is_staff_pick": False,
        "external_id": 545611,
    },
    {
        "title": "Parasite",
        "genres": ["Drama", "Thriller"],
        "blurb": (
            "Greed and class discrimination threaten the newly formed symbiotic "
            "relationship between the wealthy Park family and the destitute Kim clan."
        ),
        "link": "https://www.imdb.com/title/tt6751668/",
        "poster_url": "https://image.tmdb.org/t/p/w500/7IiTTgloJzvGI1TAYymCfbfl3vT.jpg",
        "is_staff_pick": False,
        "external_id": 496243,
    },
    {
        "title": "Spider-Man: Across the Spider-Verse",
        "genres": ["Animation", "Action", "Sci-Fi"],
        "blurb": (
            "Miles Morales catapults across the Multiverse, where he encounters a team "
            "of Spider-People charged with protecting its very existence."
        ),
        "link": "https://www.imdb.com/title/tt9362722/",
        "poster_url": "https://image.tmdb.org/t/p/w500/8Vt6mWEReuy4Of61Lnj5Xj704m8.jpg",
        "is_staff_pick": False,
        "external_id": 569094,
    },
    {
        "title": "The Grand Budapest Hotel",
        "genres": ["Comedy", "Drama"],
        "blurb": (
            "A writer encounters the owner of an aging high-class hotel, who tells him "
            "of his early years serving as a lobby boy during the hotel's glory days."
        ),
        "link": "https://www.imdb.com/title/tt2278388/",
        "poster_url": "https://image.tmdb.org/t/p/w500/eWdyYQreja6JGCzqHWXpWHDrrPo.jpg",
        "is_staff_pick": False,
        "external_id": 120467,
    },
]


def build_seed_rows(now: datetime | None = None) -> list[dict[str, Any]]:
    """Seed rows owned by the system user, one second apart."""
    started = now or datetime.now(UTC)
    return [
        {
            **item,
            "owner_subject": SYSTEM_SUBJECT,
            "created_at": (started + timedelta(seconds=offset)).isoformat(),
        }
        for offset, item in enumerate(SEED_RECOMMENDATIONS)
    ]
