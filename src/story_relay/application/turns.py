"""Turn-taking service: the call contracts the HTTP layer and clients consume."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from story_relay.core.access import AccessResolver
from story_relay.core.contributions import ContributionRecorder
from story_relay.core.cooldown import CooldownTracker
from story_relay.core.locking import Clock, LockManager, utc_now
from story_relay.domain.errors import NotFound
from story_relay.domain.models import (
    DEFAULT_LOCK_DURATION,
    AccessLevel,
    Snippet,
    Story,
    StoryView,
    UserRef,
)
from story_relay.domain.ports import StoryStore


class StoryTurnService:
    """Composes access, cooldown, locking and snippet recording over one store."""

    def __init__(
        self,
        store: StoryStore,
        *,
        clock: Clock = utc_now,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
    ) -> None:
        self._store = store
        self._access = AccessResolver()
        self._cooldown = CooldownTracker()
        self._locks = LockManager(
            store, access=self._access, cooldown=self._cooldown, clock=clock
        )
        self._contributions = ContributionRecorder(
            store, access=self._access, clock=clock, lock_duration=lock_duration
        )

    def begin_story(
        self, owner: UserRef, *, title: str | None = None, opening: str | None = None
    ) -> Story:
        return self._contributions.begin(owner, title=title, opening=opening)

    def acquire(self, story_id: int, user: UserRef, want_acquire: bool = True) -> StoryView:
        """Take (or renew) the story lock and return the snippet to continue from."""
        story = self._locks.acquire(story_id, user, want_acquire)
        # The baseline is the revision seen at acquisition, before any snippet
        # is written under this lock.
        with self._store.transaction(exclusive=True) as tx:
            self._cooldown.record(tx, story, user.user_id, story.revision_count)
            prior = tx.latest_snippet(story_id=story.story_id)
        return StoryView(story=story, prior_snippet=prior)

    def release(self, story_id: int, user: UserRef) -> None:
        story = self._locks.writable_story(story_id, user)
        self._locks.release(story, holder_id=user.user_id)

    def contribute(self, story_id: int, user: UserRef, content: str) -> Snippet:
        """Append a snippet under the caller's lock; the lock is released in the same commit."""
        self._locks.acquire(story_id, user, want_acquire=False)
        snippet, _ = self._contributions.contribute(story_id, user, content)
        return snippet

    def access_for(self, story_id: int, user: UserRef) -> AccessLevel:
        with self._store.transaction() as tx:
            story = tx.story(story_id)
            if story is None:
                return AccessLevel.NO_ACCESS
            return self._access.access_for(tx, story, user.user_id)

    def grant_access(
        self, story_id: int, grantor: UserRef, target: UserRef, level: AccessLevel
    ) -> None:
        with self._store.transaction(exclusive=True) as tx:
            story = tx.story(story_id)
            if story is None:
                raise NotFound(story_id)
            if not self._access.access_for(tx, story, grantor.user_id).grants_admin:
                raise NotFound(story_id)
            self._access.grant(tx, story, target.user_id, level)

    def story_view(self, story_id: int, user: UserRef) -> StoryView:
        story = self._locks.readable_story(story_id, user)
        return StoryView(story=story, prior_snippet=self._contributions.most_recent(story_id))

    def update_story(
        self,
        story_id: int,
        owner: UserRef,
        *,
        title: str | None = None,
        published: bool | None = None,
        world_readable: bool | None = None,
        lock_duration: timedelta | None = None,
    ) -> Story:
        """Change an owned story's settings; unset arguments keep their values."""

        def change(story: Story, now: datetime) -> Story:
            now_published = story.published if published is None else published
            published_at = story.published_at
            if now_published and published_at is None:
                published_at = now
            return replace(
                story,
                title=story.title if title is None else title,
                published=now_published,
                world_readable=story.world_readable if world_readable is None else world_readable,
                lock_duration=story.lock_duration if lock_duration is None else lock_duration,
                published_at=published_at,
                updated_at=now,
            )

        return self._locks.amend(story_id, owner, change)
