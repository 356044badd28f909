"""Core story and turn-lock domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum

DEFAULT_LOCK_DURATION = timedelta(hours=6)


class AccessLevel(IntEnum):
    """Level of access a user holds on one story, ordered from least to most."""

    NO_ACCESS = 0
    READER = 1
    WRITER = 2
    OWNER = 3

    @property
    def grants_read(self) -> bool:
        """Whether the user may know the story exists and read it."""
        return self >= AccessLevel.READER

    @property
    def grants_write(self) -> bool:
        """Whether the user may lock the story and contribute snippets."""
        return self >= AccessLevel.WRITER

    @property
    def grants_admin(self) -> bool:
        """Whether the user may grant access, publish and retitle the story."""
        return self is AccessLevel.OWNER

    def upgrade_to_read(self) -> AccessLevel:
        return max(self, AccessLevel.READER)

    @classmethod
    def from_name(cls, name: str) -> AccessLevel:
        return cls[name.strip().upper()]


class LockState(str, Enum):
    """Lock state of a story as seen by one applicant at one instant."""

    UNLOCKED = "unlocked"
    LOCKED_BY_SELF = "locked_by_self"
    EXPIRED = "expired"
    ACTIVE = "active"


@dataclass(frozen=True)
class UserRef:
    """Opaque reference to an authenticated user."""

    user_id: str
    display_name: str = ""


@dataclass(frozen=True)
class Story:
    """A shared document extended one snippet at a time."""

    story_id: int
    title: str | None
    published: bool
    world_readable: bool
    lock_duration: timedelta
    revision_count: int
    created_at: datetime
    updated_at: datetime
    published_at: datetime | None = None
    lock_holder: str | None = None
    lock_expiration: datetime | None = None

    def locked_by(self, user_id: str) -> bool:
        return self.lock_holder is not None and self.lock_holder == user_id

    def lock_is_valid(self, now: datetime) -> bool:
        return self.lock_expiration is not None and self.lock_expiration >= now


@dataclass(frozen=True)
class Snippet:
    """One accepted unit of writing within a story."""

    snippet_id: int
    story_id: int
    user_id: str | None
    ordinal: int
    content: str
    created_at: datetime


@dataclass(frozen=True)
class StoryView:
    """A story together with the most recent snippet a lock holder continues from."""

    story: Story
    prior_snippet: Snippet | None = None


def lock_state(story: Story, user_id: str, now: datetime) -> LockState:
    """Classify the lock on a story from the applicant's point of view."""
    if story.lock_holder is None:
        return LockState.UNLOCKED
    if story.lock_holder == user_id:
        return LockState.LOCKED_BY_SELF
    if story.lock_is_valid(now):
        return LockState.ACTIVE
    return LockState.EXPIRED
