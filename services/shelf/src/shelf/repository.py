from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NamedTuple

from common.utils import now_utc_iso

from shelf.constants import (
    INITIAL_GENRES,
    ROLE_ADMIN,
    ROLE_SOURCE_ALLOW_LIST,
    ROLE_SOURCE_ASSIGNED,
    ROLE_SOURCE_DEFAULT,
    ROLE_USER,
)
from shelf.errors import Conflict, NotFound
from shelf.models import AuditEvent, Recommendation, StaffPickRef, User

RECOMMENDATION_COLUMNS = """
    id,
    title,
    genres_json,
    link,
    blurb,
    poster_url,
    external_id,
    owner_subject,
    is_staff_pick,
    is_archived,
    created_at,
    updated_at
"""


class ArchiveOutcome(NamedTuple):
    archived: bool
    cleared_staff_pick: bool


USER_COLUMNS = """
    id,
    subject,
    email,
    name,
    role,
    is_archived,
    created_at,
    updated_at
"""


class ShelfRepository:
    """SQLite-backed store for users, recommendations and the audit log.

    The connection runs in autocommit mode and every write goes through
    ``transaction()``, which takes SQLite's write lock up front with
    ``BEGIN IMMEDIATE``. Read-then-write operations such as the Staff Pick
    swap therefore see and modify one consistent snapshot.
    """

    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                self.database_path,
                check_same_thread=False,
                isolation_level=None,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    subject TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    name TEXT,
                    role TEXT NOT NULL CHECK (role IN ('user', 'admin')),
                    role_source TEXT NOT NULL DEFAULT 'default',
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS users_by_email ON users (email);

                CREATE TABLE IF NOT EXISTS recommendations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    genres_json TEXT NOT NULL,
                    link TEXT,
                    blurb TEXT,
                    poster_url TEXT,
                    external_id INTEGER,
                    owner_subject TEXT NOT NULL,
                    is_staff_pick INTEGER NOT NULL DEFAULT 0,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (NOT (is_archived = 1 AND is_staff_pick = 1))
                );

                CREATE INDEX IF NOT EXISTS recommendations_by_owner
                    ON recommendations (owner_subject);
                CREATE INDEX IF NOT EXISTS recommendations_by_archived_created
                    ON recommendations (is_archived, created_at);
                CREATE UNIQUE INDEX IF NOT EXISTS recommendations_single_staff_pick
                    ON recommendations (is_staff_pick) WHERE is_staff_pick = 1;

                CREATE TABLE IF NOT EXISTS genre_vocabulary (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    occurred_at TEXT NOT NULL,
                    request_id TEXT,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    auth_subject TEXT,
                    status TEXT NOT NULL,
                    message TEXT
                );
                """
            )
            self._ensure_users_columns()
            with self.transaction() as connection:
                self._register_genres(connection, INITIAL_GENRES, now_utc_iso())

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def _ensure_users_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(users)").fetchall()
        existing = {row["name"] for row in column_rows}
        if "role_source" not in existing:
            self.connection.execute(
                "ALTER TABLE users ADD COLUMN role_source TEXT NOT NULL DEFAULT 'default'"
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self.connection
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    # Users

    def get_user_by_subject(self, subject: str) -> User | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE subject = ?",
                (subject,),
            ).fetchone()
            if row is None:
                return None
            return self._to_user(row)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_user(row)

    def get_users_by_subjects(self, subjects: Sequence[str]) -> dict[str, User]:
        unique_subjects = sorted(set(subjects))
        if not unique_subjects:
            return {}
        placeholders = ", ".join("?" for _ in unique_subjects)
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE subject IN ({placeholders})",
                tuple(unique_subjects),
            )
            return {row["subject"]: self._to_user(row) for row in cursor.fetchall()}

    def list_users(self, *, include_archived: bool = False) -> list[User]:
        with self._lock:
            query = f"SELECT {USER_COLUMNS} FROM users"
            if not include_archived:
                query += " WHERE is_archived = 0"
            query += " ORDER BY created_at, id"
            cursor = self.connection.execute(query)
            return [self._to_user(row) for row in cursor.fetchall()]

    def upsert_user(
        self,
        *,
        subject: str,
        email: str,
        name: str | None,
        allow_listed: bool,
    ) -> User:
        """Create or refresh a user by subject id.

        An allow-listed email makes the user an admin. A user whose admin role
        came only from the allow-list drops back to ``user`` once the email is
        no longer listed; roles assigned by an admin are left alone.
        """
        with self.transaction() as connection:
            now = now_utc_iso()
            existing = connection.execute(
                "SELECT id, role, role_source FROM users WHERE subject = ?",
                (subject,),
            ).fetchone()
            if allow_listed:
                role, role_source = ROLE_ADMIN, ROLE_SOURCE_ALLOW_LIST
            elif existing is None or existing["role_source"] == ROLE_SOURCE_ALLOW_LIST:
                role, role_source = ROLE_USER, ROLE_SOURCE_DEFAULT
            else:
                role, role_source = existing["role"], existing["role_source"]

            if existing is None:
                user_id = str(uuid.uuid4())
                connection.execute(
                    """
                    INSERT INTO users (
                        id,
                        subject,
                        email,
                        name,
                        role,
                        role_source,
                        is_archived,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (user_id, subject, email, name, role, role_source, now, now),
                )
            else:
                user_id = existing["id"]
                connection.execute(
                    """
                    UPDATE users
                    SET email = ?, name = ?, role = ?, role_source = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (email, name, role, role_source, now, user_id),
                )
        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError(f"User {user_id} vanished after upsert")
        return user

    def update_user_role(self, user_id: str, role: str) -> bool:
        with self.transaction() as connection:
            cursor = connection.execute(
                "UPDATE users SET role = ?, role_source = ?, updated_at = ? WHERE id = ?",
                (role, ROLE_SOURCE_ASSIGNED, now_utc_iso(), user_id),
            )
            return cursor.rowcount > 0

    def archive_user(self, subject: str) -> int | None:
        """Archive a user and every recommendation they own.

        Returns the number of recommendations archived, or None when the
        subject is unknown. Any Staff Pick among them is cleared with it.
        """
        with self.transaction() as connection:
            now = now_utc_iso()
            cursor = connection.execute(
                "UPDATE users SET is_archived = 1, updated_at = ? WHERE subject = ?",
                (now, subject),
            )
            if cursor.rowcount == 0:
                return None
            cursor = connection.execute(
                """
                UPDATE recommendations
                SET is_archived = 1, is_staff_pick = 0, updated_at = ?
                WHERE owner_subject = ? AND is_archived = 0
                """,
                (now, subject),
            )
            return cursor.rowcount

    # Recommendations

    def insert_recommendation(
        self,
        *,
        title: str,
        genres: list[str],
        link: str | None,
        blurb: str | None,
        poster_url: str | None,
        external_id: int | None,
        owner_subject: str,
    ) -> str:
        with self.transaction() as connection:
            now = now_utc_iso()
            recommendation_id = self._insert_recommendation(
                connection,
                title=title,
                genres=genres,
                link=link,
                blurb=blurb,
                poster_url=poster_url,
                external_id=external_id,
                owner_subject=owner_subject,
                is_staff_pick=False,
                created_at=now,
            )
            self._register_genres(connection, genres, now)
            return recommendation_id

    def seed_recommendations(self, items: Sequence[dict[str, Any]]) -> int:
        """Insert seed rows in one transaction unless the table already has data."""
        with self.transaction() as connection:
            existing = connection.execute("SELECT 1 FROM recommendations LIMIT 1").fetchone()
            if existing is not None:
                return 0
            for item in items:
                self._insert_recommendation(connection, **item)
                self._register_genres(connection, item["genres"], item["created_at"])
            return len(items)

    def get_recommendation(self, recommendation_id: str) -> Recommendation | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {RECOMMENDATION_COLUMNS} FROM recommendations WHERE id = ?",
                (recommendation_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_recommendation(row)

    def list_active_recommendations(self) -> list[Recommendation]:
        """Non-archived recommendations in insertion order."""
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {RECOMMENDATION_COLUMNS}
                FROM recommendations
                WHERE is_archived = 0
                ORDER BY seq
                """
            )
            return [self._to_recommendation(row) for row in cursor.fetchall()]

    def list_staff_picks(self) -> list[Recommendation]:
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {RECOMMENDATION_COLUMNS}
                FROM recommendations
                WHERE is_staff_pick = 1
                ORDER BY seq
                """
            )
            return [self._to_recommendation(row) for row in cursor.fetchall()]

    def update_recommendation(
        self,
        recommendation_id: str,
        *,
        title: str,
        genres: list[str],
        link: str | None,
        blurb: str | None,
        poster_url: str | None,
        external_id: int | None,
    ) -> None:
        with self.transaction() as connection:
            row = connection.execute(
                "SELECT is_archived FROM recommendations WHERE id = ?",
                (recommendation_id,),
            ).fetchone()
            if row is None:
                raise NotFound("Recommendation not found")
            if row["is_archived"]:
                raise Conflict("Cannot edit archived recommendation")
            now = now_utc_iso()
            connection.execute(
                """
                UPDATE recommendations
                SET
                    title = ?,
                    genres_json = ?,
                    link = ?,
                    blurb = ?,
                    poster_url = ?,
                    external_id = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    title,
                    json.dumps(genres),
                    link,
                    blurb,
                    poster_url,
                    external_id,
                    now,
                    recommendation_id,
                ),
            )
            self._register_genres(connection, genres, now)

    def archive_recommendation(self, recommendation_id: str) -> ArchiveOutcome:
        """Soft delete; clears the Staff Pick flag in the same write.

        ``archived`` is False when the record was already archived.
        """
        with self.transaction() as connection:
            row = connection.execute(
                "SELECT is_archived, is_staff_pick FROM recommendations WHERE id = ?",
                (recommendation_id,),
            ).fetchone()
            if row is None:
                raise NotFound("Recommendation not found")
            if row["is_archived"]:
                return ArchiveOutcome(archived=False, cleared_staff_pick=False)
            connection.execute(
                """
                UPDATE recommendations
                SET is_archived = 1, is_staff_pick = 0, updated_at = ?
                WHERE id = ?
                """,
                (now_utc_iso(), recommendation_id),
            )
            return ArchiveOutcome(archived=True, cleared_staff_pick=bool(row["is_staff_pick"]))

    def swap_staff_pick(self, recommendation_id: str) -> StaffPickRef | None:
        """Make ``recommendation_id`` the only Staff Pick.

        Returns the record that lost the pick, if any. The previous pick is
        cleared before the target is set so the single-pick index never sees
        two flagged rows.
        """
        with self.transaction() as connection:
            target = connection.execute(
                "SELECT id, is_archived FROM recommendations WHERE id = ?",
                (recommendation_id,),
            ).fetchone()
            if target is None:
                raise NotFound("Recommendation not found")
            if target["is_archived"]:
                raise Conflict("Cannot mark archived recommendation as Staff Pick")

            now = now_utc_iso()
            current = connection.execute(
                """
                SELECT id, title
                FROM recommendations
                WHERE is_staff_pick = 1 AND id != ?
                """,
                (recommendation_id,),
            ).fetchone()
            previous: StaffPickRef | None = None
            if current is not None:
                connection.execute(
                    "UPDATE recommendations SET is_staff_pick = 0, updated_at = ? WHERE id = ?",
                    (now, current["id"]),
                )
                previous = StaffPickRef(id=current["id"], title=current["title"])

            connection.execute(
                "UPDATE recommendations SET is_staff_pick = 1, updated_at = ? WHERE id = ?",
                (now, recommendation_id),
            )
            return previous

    def clear_staff_pick(self, recommendation_id: str) -> bool:
        """Unset the flag; returns False when it was not set."""
        with self.transaction() as connection:
            row = connection.execute(
                "SELECT is_staff_pick FROM recommendations WHERE id = ?",
                (recommendation_id,),
            ).fetchone()
            if row is None:
                raise NotFound("Recommendation not found")
            if not row["is_staff_pick"]:
                return False
            connection.execute(
                "UPDATE recommendations SET is_staff_pick = 0, updated_at = ? WHERE id = ?",
                (now_utc_iso(), recommendation_id),
            )
            return True

    # Genre vocabulary

    def list_genres(self) -> list[str]:
        with self._lock:
            cursor = self.connection.execute("SELECT name FROM genre_vocabulary ORDER BY seq")
            return [row["name"] for row in cursor.fetchall()]

    # Audit log

    def record_audit_event(
        self,
        *,
        request_id: str | None,
        method: str,
        path: str,
        action: str,
        auth_subject: str | None,
        status: str,
        message: str | None,
    ) -> int:
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT INTO audit_events (
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    auth_subject,
                    status,
                    message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_utc_iso(),
                    request_id,
                    method,
                    path,
                    action,
                    auth_subject,
                    status,
                    message,
                ),
            )
            return int(cursor.lastrowid)

    def list_audit_events(
        self,
        *,
        limit: int,
        action: str | None,
        status: str | None,
    ) -> list[AuditEvent]:
        with self._lock:
            query = """
                SELECT
                    id AS event_id,
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    auth_subject,
                    status,
                    message
                FROM audit_events
            """
            params: list[Any] = []
            filters: list[str] = []
            if action:
                filters.append("action = ?")
                params.append(action)
            if status:
                filters.append("status = ?")
                params.append(status)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [AuditEvent(**dict(row)) for row in cursor.fetchall()]

    def _insert_recommendation(
        self,
        connection: sqlite3.Connection,
        *,
        title: str,
        genres: list[str],
        link: str | None,
        blurb: str | None,
        poster_url: str | None,
        external_id: int | None,
        owner_subject: str,
        is_staff_pick: bool,
        created_at: str,
    ) -> str:
        recommendation_id = str(uuid.uuid4())
        connection.execute(
            """
            INSERT INTO recommendations (
                id,
                title,
                genres_json,
                link,
                blurb,
                poster_url,
                external_id,
                owner_subject,
                is_staff_pick,
                is_archived,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                recommendation_id,
                title,
                json.dumps(genres),
                link,
                blurb,
                poster_url,
                external_id,
                owner_subject,
                int(is_staff_pick),
                created_at,
                created_at,
            ),
        )
        return recommendation_id

    def _register_genres(
        self,
        connection: sqlite3.Connection,
        genres: Sequence[str],
        now: str,
    ) -> None:
        connection.executemany(
            "INSERT OR IGNORE INTO genre_vocabulary (name, created_at) VALUES (?, ?)",
            [(genre, now) for genre in genres],
        )

    def _to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            subject=row["subject"],
            email=row["email"],
            name=row["name"],
            role=row["role"],
            is_archived=bool(row["is_archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_recommendation(self, row: sqlite3.Row) -> Recommendation:
        return Recommendation(
            id=row["id"],
            title=row["title"],
            genres=json.loads(row["genres_json"]),
            link=row["link"],
            blurb=row["blurb"],
            poster_url=row["poster_url"],
            external_id=row["external_id"],
            owner_subject=row["owner_subject"],
            is_staff_pick=bool(row["is_staff_pick"]),
            is_archived=bool(row["is_archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
