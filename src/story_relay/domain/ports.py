"""Ports for transactional story persistence."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from story_relay.domain.models import Snippet, Story


class StoryTransaction(Protocol):
    """Reads and writes executed inside one store transaction.

    Everything done through one transaction commits together when its scope
    exits normally and is rolled back when the scope raises.
    """

    def story(self, story_id: int) -> Story | None:
        ...

    def insert_story(
        self, *, title: str | None, lock_duration_s: int, now: datetime
    ) -> Story:
        ...

    def save_story(self, story: Story) -> int:
        """Persist every non-lock column; return the number of rows updated."""
        ...

    def set_lock(self, *, story_id: int, holder_id: str, expiration: datetime) -> None:
        ...

    def clear_lock(self, *, story_id: int, holder_id: str) -> int:
        """Clear the lock only if `holder_id` holds it; return rows updated."""
        ...

    def access_code(self, *, story_id: int, user_id: str) -> int | None:
        ...

    def upsert_access(self, *, story_id: int, user_id: str, access_code: int) -> None:
        ...

    def delete_access(self, *, story_id: int, user_id: str) -> None:
        ...

    def attempt(self, *, story_id: int, user_id: str) -> int | None:
        ...

    def upsert_attempt(self, *, story_id: int, user_id: str, revision: int) -> None:
        ...

    def insert_snippet(
        self, *, story_id: int, user_id: str, ordinal: int, content: str, now: datetime
    ) -> Snippet:
        ...

    def latest_snippet(self, *, story_id: int) -> Snippet | None:
        ...

    def display_name(self, *, user_id: str) -> str | None:
        ...


class StoryStore(Protocol):
    """Opens transactions against the shared story record store."""

    def transaction(self, *, exclusive: bool = False) -> AbstractContextManager[StoryTransaction]:
        """Open a transaction.

        An exclusive transaction reads and holds the records it touches until
        it ends, blocking every other exclusive transaction meanwhile.
        """
        ...
