"""Errors raised by turn-lock operations."""

from __future__ import annotations

from datetime import datetime


class LockError(RuntimeError):
    """Base class for every failure of a lock, access or contribution operation."""


class NotFound(LockError):
    """Story is absent, or the caller lacks the access the operation needs."""

    def __init__(self, story_id: int | None = None) -> None:
        super().__init__("Story not found")
        self.story_id = story_id


class Unlocked(LockError):
    """Caller inspected a story that nobody holds."""

    def __init__(self) -> None:
        super().__init__("Story is not locked")


class Cooldown(LockError):
    """Caller contributed last and nobody else has contributed since."""

    def __init__(self) -> None:
        super().__init__("Last contribution too recent")


class AlreadyLocked(LockError):
    """Another user holds an unexpired lock on the story."""

    def __init__(self, holder_name: str, expiration: datetime) -> None:
        super().__init__(f"Story is locked by {holder_name} until {expiration.isoformat()}")
        self.holder_name = holder_name
        self.expiration = expiration


class ReleaseFailed(LockError):
    """Conditional release matched no row."""

    def __init__(self) -> None:
        super().__init__("Unable to revoke lock")


class StorageFailure(LockError):
    """The transactional store failed; wraps the underlying error."""
