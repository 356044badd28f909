"""Domain models, errors and ports for turn-based story writing."""

from story_relay.domain.errors import (
    AlreadyLocked,
    Cooldown,
    LockError,
    NotFound,
    ReleaseFailed,
    StorageFailure,
    Unlocked,
)
from story_relay.domain.models import (
    AccessLevel,
    LockState,
    Snippet,
    Story,
    StoryView,
    UserRef,
    lock_state,
)
from story_relay.domain.ports import StoryStore, StoryTransaction

__all__ = [
    "AccessLevel",
    "AlreadyLocked",
    "Cooldown",
    "LockError",
    "LockState",
    "NotFound",
    "ReleaseFailed",
    "Snippet",
    "StorageFailure",
    "Story",
    "StoryStore",
    "StoryTransaction",
    "StoryView",
    "Unlocked",
    "UserRef",
    "lock_state",
]
