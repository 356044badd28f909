"""Turn-lock state machine over story records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from story_relay.core.access import AccessResolver
from story_relay.core.cooldown import CooldownTracker
from story_relay.domain.errors import (
    AlreadyLocked,
    Cooldown,
    NotFound,
    ReleaseFailed,
    Unlocked,
)
from story_relay.domain.models import AccessLevel, Story, UserRef
from story_relay.domain.ports import StoryStore, StoryTransaction

Clock = Callable[[], datetime]

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class LockManager:
    """Acquire, inspect and release the exclusive right to extend a story.

    All checks and the lock mutation of one acquisition run inside a single
    exclusive store transaction, so concurrent acquirers on one story are
    totally ordered and a failed acquisition leaves the lock fields untouched.
    """

    def __init__(
        self,
        store: StoryStore,
        *,
        access: AccessResolver | None = None,
        cooldown: CooldownTracker | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._access = access or AccessResolver()
        self._cooldown = cooldown or CooldownTracker()
        self._clock = clock

    def acquire(self, story_id: int, applicant: UserRef, want_acquire: bool) -> Story:
        """Lock a story for the applicant, or confirm and renew a lock they hold.

        With `want_acquire` false the call only succeeds when the applicant
        already holds the lock; it then behaves like a renewal.
        """
        now = self._clock()
        with self._store.transaction(exclusive=True) as tx:
            story = self._story_with_access(tx, story_id, applicant, required="write")

            locked_by_other = (
                story.lock_holder is not None and story.lock_holder != applicant.user_id
            )
            expiration_valid = story.lock_is_valid(now)

            if locked_by_other and expiration_valid:
                assert story.lock_holder is not None and story.lock_expiration is not None
                holder_name = tx.display_name(user_id=story.lock_holder) or story.lock_holder
                logger.info(
                    "lock.denied story_id=%s user_id=%s reason=conflict holder=%s",
                    story_id,
                    applicant.user_id,
                    story.lock_holder,
                )
                raise AlreadyLocked(holder_name=holder_name, expiration=story.lock_expiration)

            if not want_acquire:
                if not story.locked_by(applicant.user_id) and not expiration_valid:
                    raise Unlocked()

            if not self._cooldown.allows(tx, story, applicant.user_id):
                logger.info(
                    "lock.denied story_id=%s user_id=%s reason=cooldown revision=%s",
                    story_id,
                    applicant.user_id,
                    story.revision_count,
                )
                raise Cooldown()

            expiration = now + story.lock_duration
            tx.set_lock(story_id=story.story_id, holder_id=applicant.user_id, expiration=expiration)
            locked = replace(story, lock_holder=applicant.user_id, lock_expiration=expiration)

        logger.info(
            "lock.acquired story_id=%s user_id=%s expires=%s",
            story_id,
            applicant.user_id,
            expiration.isoformat(),
        )
        return locked

    def release(self, story: Story, *, holder_id: str | None = None) -> None:
        """Clear the lock only if the expected holder still holds it."""
        expected = holder_id if holder_id is not None else story.lock_holder
        if expected is None:
            raise ReleaseFailed()
        with self._store.transaction(exclusive=True) as tx:
            count = tx.clear_lock(story_id=story.story_id, holder_id=expected)
        if count != 1:
            logger.info(
                "lock.release_failed story_id=%s user_id=%s", story.story_id, expected
            )
            raise ReleaseFailed()
        logger.info("lock.released story_id=%s user_id=%s", story.story_id, expected)

    def save(self, story: Story) -> None:
        """Persist every field of the story except the lock holder and expiration."""
        with self._store.transaction(exclusive=True) as tx:
            if tx.save_story(story) != 1:
                raise NotFound(story.story_id)

    def amend(
        self, story_id: int, owner: UserRef, change: Callable[[Story, datetime], Story]
    ) -> Story:
        """Apply `change` to an owned story and save it within one exclusive transaction."""
        now = self._clock()
        with self._store.transaction(exclusive=True) as tx:
            story = self._story_with_access(tx, story_id, owner, required="admin")
            amended = replace(
                change(story, now),
                lock_holder=story.lock_holder,
                lock_expiration=story.lock_expiration,
            )
            tx.save_story(amended)
        logger.info("story.amended story_id=%s user_id=%s", story_id, owner.user_id)
        return amended

    def writable_story(self, story_id: int, user: UserRef) -> Story:
        with self._store.transaction() as tx:
            return self._story_with_access(tx, story_id, user, required="write")

    def readable_story(self, story_id: int, user: UserRef) -> Story:
        with self._store.transaction() as tx:
            return self._story_with_access(tx, story_id, user, required="read")

    def _story_with_access(
        self, tx: StoryTransaction, story_id: int, user: UserRef, *, required: str
    ) -> Story:
        # Missing stories and insufficient access are reported identically.
        story = tx.story(story_id)
        if story is None:
            raise NotFound(story_id)
        access = self._access.access_for(tx, story, user.user_id)
        if not _satisfies(access, required):
            raise NotFound(story_id)
        return story


def _satisfies(access: AccessLevel, required: str) -> bool:
    if required == "admin":
        return access.grants_admin
    if required == "write":
        return access.grants_write
    return access.grants_read
