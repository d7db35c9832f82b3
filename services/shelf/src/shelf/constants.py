from __future__ import annotations

INITIAL_GENRES = (
    "Action",
    "Comedy",
    "Drama",
    "Horror",
    "Sci-Fi",
    "Romance",
    "Thriller",
    "Documentary",
    "Animation",
    "Fantasy",
    "Mystery",
    "Other",
)

TITLE_MAX_LENGTH = 100
BLURB_MAX_LENGTH = 500
LINK_MAX_LENGTH = 2000
GENRES_MIN_COUNT = 1
PUBLIC_LIST_LIMIT = 6

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

# How a user got their current role.
ROLE_SOURCE_DEFAULT = "default"
ROLE_SOURCE_ALLOW_LIST = "allow_list"
ROLE_SOURCE_ASSIGNED = "assigned"

# Owner subject for seed data.
SYSTEM_SUBJECT = "system"
TEAM_DISPLAY_NAME = "HypeShelf Team"
TEAM_EMAIL = "team@hypeshelf.com"
DELETED_USER_NAME = "Deleted User"
ANONYMOUS_NAME = "Anonymous"

DEFAULT_ADMIN_EMAILS = ("admin@example.com",)
