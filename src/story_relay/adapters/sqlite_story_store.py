"""SQLite-backed persistence for users, tokens, stories and turn-lock records."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from story_relay.domain.errors import StorageFailure
from story_relay.domain.models import Snippet, Story

logger = logging.getLogger(__name__)

_STORY_COLUMNS = """
    story_id, title, published, world_readable, lock_duration_s, revision_count,
    created_at_utc, updated_at_utc, published_at_utc, lock_user_id, lock_expiration_utc
"""


@dataclass(frozen=True)
class StoredUser:
    """Stored user account data."""

    user_id: str
    email: str
    display_name: str
    password_hash: str
    created_at_utc: str


@dataclass(frozen=True)
class StoredToken:
    """Stored bearer-token session."""

    token_id: str
    user_id: str
    token_value: str
    expires_at_utc: str
    created_at_utc: str


def _timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def _parse_timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SQLiteStoryTransaction:
    """Story record reads and writes bound to one open SQLite transaction."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def story(self, story_id: int) -> Story | None:
        row = self._connection.execute(
            f"SELECT {_STORY_COLUMNS} FROM stories WHERE story_id = ?",
            (story_id,),
        ).fetchone()
        if row is None:
            return None
        return _story_from_row(row)

    def insert_story(self, *, title: str | None, lock_duration_s: int, now: datetime) -> Story:
        stamp = _timestamp(now)
        cursor = self._connection.execute(
            """
            INSERT INTO stories (title, lock_duration_s, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?)
            """,
            (title, lock_duration_s, stamp, stamp),
        )
        story_id = cursor.lastrowid
        story = self.story(int(story_id)) if story_id is not None else None
        if story is None:
            raise StorageFailure("Created story could not be loaded.")
        return story

    def save_story(self, story: Story) -> int:
        cursor = self._connection.execute(
            """
            UPDATE stories
            SET
                title = ?,
                published = ?,
                world_readable = ?,
                lock_duration_s = ?,
                revision_count = ?,
                created_at_utc = ?,
                updated_at_utc = ?,
                published_at_utc = ?
            WHERE story_id = ?
            """,
            (
                story.title,
                int(story.published),
                int(story.world_readable),
                int(story.lock_duration.total_seconds()),
                story.revision_count,
                _timestamp(story.created_at),
                _timestamp(story.updated_at),
                _timestamp(story.published_at),
                story.story_id,
            ),
        )
        return cursor.rowcount

    def set_lock(self, *, story_id: int, holder_id: str, expiration: datetime) -> None:
        self._connection.execute(
            """
            UPDATE stories
            SET lock_user_id = ?, lock_expiration_utc = ?
            WHERE story_id = ?
            """,
            (holder_id, _timestamp(expiration), story_id),
        )

    def clear_lock(self, *, story_id: int, holder_id: str) -> int:
        cursor = self._connection.execute(
            """
            UPDATE stories
            SET lock_user_id = NULL, lock_expiration_utc = NULL
            WHERE story_id = ? AND lock_user_id = ?
            """,
            (story_id, holder_id),
        )
        return cursor.rowcount

    def access_code(self, *, story_id: int, user_id: str) -> int | None:
        row = self._connection.execute(
            """
            SELECT access_level_code
            FROM story_access
            WHERE story_id = ? AND user_id = ?
            """,
            (story_id, user_id),
        ).fetchone()
        if row is None:
            return None
        return int(row["access_level_code"])

    def upsert_access(self, *, story_id: int, user_id: str, access_code: int) -> None:
        self._connection.execute(
            """
            INSERT INTO story_access (story_id, user_id, access_level_code)
            VALUES (?, ?, ?)
            ON CONFLICT (story_id, user_id)
            DO UPDATE SET access_level_code = excluded.access_level_code
            """,
            (story_id, user_id, access_code),
        )

    def delete_access(self, *, story_id: int, user_id: str) -> None:
        self._connection.execute(
            "DELETE FROM story_access WHERE story_id = ? AND user_id = ?",
            (story_id, user_id),
        )

    def attempt(self, *, story_id: int, user_id: str) -> int | None:
        row = self._connection.execute(
            """
            SELECT revision_count
            FROM contribution_attempts
            WHERE story_id = ? AND user_id = ?
            """,
            (story_id, user_id),
        ).fetchone()
        if row is None:
            return None
        return int(row["revision_count"])

    def upsert_attempt(self, *, story_id: int, user_id: str, revision: int) -> None:
        self._connection.execute(
            """
            INSERT INTO contribution_attempts (story_id, user_id, revision_count)
            VALUES (?, ?, ?)
            ON CONFLICT (story_id, user_id)
            DO UPDATE SET revision_count = excluded.revision_count
            """,
            (story_id, user_id, revision),
        )

    def insert_snippet(
        self, *, story_id: int, user_id: str, ordinal: int, content: str, now: datetime
    ) -> Snippet:
        stamp = _timestamp(now)
        cursor = self._connection.execute(
            """
            INSERT INTO snippets (story_id, user_id, ordinal, content, created_at_utc)
            VALUES (?, ?, ?, ?, ?)
            """,
            (story_id, user_id, ordinal, content, stamp),
        )
        return Snippet(
            snippet_id=int(cursor.lastrowid or 0),
            story_id=story_id,
            user_id=user_id,
            ordinal=ordinal,
            content=content,
            created_at=now,
        )

    def latest_snippet(self, *, story_id: int) -> Snippet | None:
        row = self._connection.execute(
            """
            SELECT snippet_id, story_id, user_id, ordinal, content, created_at_utc
            FROM snippets
            WHERE story_id = ?
            ORDER BY ordinal DESC
            LIMIT 1
            """,
            (story_id,),
        ).fetchone()
        if row is None:
            return None
        return Snippet(
            snippet_id=int(row["snippet_id"]),
            story_id=int(row["story_id"]),
            user_id=None if row["user_id"] is None else str(row["user_id"]),
            ordinal=int(row["ordinal"]),
            content=str(row["content"]),
            created_at=_parse_timestamp(row["created_at_utc"]) or datetime.now(UTC),
        )

    def display_name(self, *, user_id: str) -> str | None:
        row = self._connection.execute(
            "SELECT display_name FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        return str(row["display_name"])


class SQLiteStoryStore:
    """Persist and query story platform records from one SQLite database.

    Exclusive transactions use `BEGIN IMMEDIATE`, which takes the database
    write lock up front. That lock is what serializes concurrent lock
    acquisitions, across threads and processes sharing the database file.
    """

    def __init__(self, db_path: Path, *, busy_timeout_seconds: float = 30.0) -> None:
        self._db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_seconds)
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS access_tokens (
                    token_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_value TEXT NOT NULL UNIQUE,
                    expires_at_utc TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS stories (
                    story_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT,
                    published INTEGER NOT NULL DEFAULT 0,
                    world_readable INTEGER NOT NULL DEFAULT 0,
                    lock_duration_s INTEGER NOT NULL DEFAULT 21600,
                    revision_count INTEGER NOT NULL DEFAULT 0,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    published_at_utc TEXT,
                    lock_user_id TEXT,
                    lock_expiration_utc TEXT,
                    CHECK ((lock_user_id IS NULL) = (lock_expiration_utc IS NULL))
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS story_access (
                    story_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    access_level_code INTEGER NOT NULL,
                    PRIMARY KEY (story_id, user_id)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS contribution_attempts (
                    story_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    revision_count INTEGER NOT NULL,
                    PRIMARY KEY (story_id, user_id)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS snippets (
                    snippet_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    story_id INTEGER NOT NULL,
                    user_id TEXT,
                    ordinal INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    UNIQUE (story_id, ordinal)
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_stories_lock_user
                ON stories(lock_user_id)
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_story_access_user
                ON story_access(user_id, story_id)
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tokens_user
                ON access_tokens(user_id, expires_at_utc DESC)
                """
            )

    @contextmanager
    def transaction(self, *, exclusive: bool = False) -> Iterator[SQLiteStoryTransaction]:
        """Run story reads/writes in one transaction on a dedicated connection.

        The transaction commits when the block exits normally. Any exception
        rolls it back; SQLite errors are re-raised as `StorageFailure`.
        """
        connection = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout_seconds,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        try:
            try:
                connection.execute("BEGIN IMMEDIATE" if exclusive else "BEGIN")
                yield SQLiteStoryTransaction(connection)
                connection.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback(connection)
                logger.error("store.transaction_failed db_path=%s error=%s", self._db_path, exc)
                raise StorageFailure(f"Story store transaction failed: {exc}") from exc
            except BaseException:
                _rollback(connection)
                raise
        finally:
            connection.close()

    def create_user(
        self, *, email: str, display_name: str, password_hash: str
    ) -> StoredUser | None:
        """Create a user record; return None when email is already taken."""
        now = datetime.now(UTC).isoformat()
        user_id = uuid4().hex
        try:
            with self._connect() as connection:
                connection.execute(
                    """
                    INSERT INTO users (user_id, email, display_name, password_hash, created_at_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, email.lower(), display_name, password_hash, now),
                )
        except sqlite3.IntegrityError:
            return None
        return self.get_user_by_id(user_id=user_id)

    def get_user_by_email(self, *, email: str) -> StoredUser | None:
        """Load one user by normalized email."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT user_id, email, display_name, password_hash, created_at_utc
                FROM users
                WHERE email = ?
                """,
                (email.lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    def get_user_by_id(self, *, user_id: str) -> StoredUser | None:
        """Load one user by id."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT user_id, email, display_name, password_hash, created_at_utc
                FROM users
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    def create_token(self, *, user_id: str, token_value: str, expires_at_utc: str) -> StoredToken:
        """Create and store a bearer token."""
        token_id = uuid4().hex
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO access_tokens (token_id, user_id, token_value, expires_at_utc, created_at_utc)
                VALUES (?, ?, ?, ?, ?)
                """,
                (token_id, user_id, token_value, expires_at_utc, now),
            )
        return StoredToken(
            token_id=token_id,
            user_id=user_id,
            token_value=token_value,
            expires_at_utc=expires_at_utc,
            created_at_utc=now,
        )

    def get_user_by_token(self, *, token_value: str, now_utc: str) -> StoredUser | None:
        """Resolve a bearer token into a user if it is still valid."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT u.user_id, u.email, u.display_name, u.password_hash, u.created_at_utc
                FROM access_tokens t
                JOIN users u ON u.user_id = t.user_id
                WHERE t.token_value = ? AND t.expires_at_utc > ?
                """,
                (token_value, now_utc),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    def list_stories(self, *, user_id: str, limit: int = 100) -> list[Story]:
        """Return recently updated stories the user holds an explicit grant on."""
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_STORY_COLUMNS}
                FROM stories
                WHERE story_id IN (
                    SELECT story_id FROM story_access WHERE user_id = ?
                )
                ORDER BY updated_at_utc DESC, story_id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_story_from_row(row) for row in rows]

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> StoredUser:
        return StoredUser(
            user_id=str(row["user_id"]),
            email=str(row["email"]),
            display_name=str(row["display_name"]),
            password_hash=str(row["password_hash"]),
            created_at_utc=str(row["created_at_utc"]),
        )


def _rollback(connection: sqlite3.Connection) -> None:
    if connection.in_transaction:
        connection.execute("ROLLBACK")


def _story_from_row(row: sqlite3.Row) -> Story:
    created_at = _parse_timestamp(row["created_at_utc"])
    updated_at = _parse_timestamp(row["updated_at_utc"])
    if created_at is None or updated_at is None:
        raise StorageFailure(f"Story {row['story_id']} is missing timestamps.")
    return Story(
        story_id=int(row["story_id"]),
        title=None if row["title"] is None else str(row["title"]),
        published=bool(row["published"]),
        world_readable=bool(row["world_readable"]),
        lock_duration=timedelta(seconds=int(row["lock_duration_s"])),
        revision_count=int(row["revision_count"]),
        created_at=created_at,
        updated_at=updated_at,
        published_at=_parse_timestamp(row["published_at_utc"]),
        lock_holder=None if row["lock_user_id"] is None else str(row["lock_user_id"]),
        lock_expiration=_parse_timestamp(row["lock_expiration_utc"]),
    )
