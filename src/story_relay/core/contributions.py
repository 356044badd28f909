"""Recording snippets: opening a story and extending it under a held lock."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta

from story_relay.core.access import AccessResolver
from story_relay.core.locking import Clock, utc_now
from story_relay.domain.errors import NotFound, ReleaseFailed, Unlocked
from story_relay.domain.models import DEFAULT_LOCK_DURATION, AccessLevel, Snippet, Story, UserRef
from story_relay.domain.ports import StoryStore

logger = logging.getLogger(__name__)


class ContributionRecorder:
    """Writes snippets and advances story revisions."""

    def __init__(
        self,
        store: StoryStore,
        *,
        access: AccessResolver | None = None,
        clock: Clock = utc_now,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
    ) -> None:
        self._store = store
        self._access = access or AccessResolver()
        self._clock = clock
        self._lock_duration = lock_duration

    def begin(
        self, owner: UserRef, *, title: str | None = None, opening: str | None = None
    ) -> Story:
        """Create an unlocked story at revision 0 owned by `owner`.

        The optional opening snippet is stored at ordinal 0 and does not count
        as a contribution.
        """
        now = self._clock()
        with self._store.transaction(exclusive=True) as tx:
            story = tx.insert_story(
                title=title,
                lock_duration_s=int(self._lock_duration.total_seconds()),
                now=now,
            )
            self._access.grant(tx, story, owner.user_id, AccessLevel.OWNER)
            if opening is not None:
                tx.insert_snippet(
                    story_id=story.story_id,
                    user_id=owner.user_id,
                    ordinal=0,
                    content=opening,
                    now=now,
                )
        logger.info("story.begun story_id=%s owner_id=%s", story.story_id, owner.user_id)
        return story

    def contribute(
        self, story_id: int, contributor: UserRef, content: str
    ) -> tuple[Snippet, Story]:
        """Append a snippet under a valid held lock and hand the lock back.

        Snippet, revision and release commit together; if the lock can no
        longer be cleared nothing is written.
        """
        now = self._clock()
        with self._store.transaction(exclusive=True) as tx:
            story = tx.story(story_id)
            if story is None:
                raise NotFound(story_id)
            if not self._access.access_for(tx, story, contributor.user_id).grants_write:
                raise NotFound(story_id)
            if not (story.locked_by(contributor.user_id) and story.lock_is_valid(now)):
                raise Unlocked()
            revision = story.revision_count + 1
            snippet = tx.insert_snippet(
                story_id=story_id,
                user_id=contributor.user_id,
                ordinal=revision,
                content=content,
                now=now,
            )
            updated = replace(
                story,
                revision_count=revision,
                updated_at=now,
                lock_holder=None,
                lock_expiration=None,
            )
            tx.save_story(updated)
            if tx.clear_lock(story_id=story_id, holder_id=contributor.user_id) != 1:
                raise ReleaseFailed()
        logger.info(
            "snippet.contributed story_id=%s user_id=%s revision=%s",
            story_id,
            contributor.user_id,
            revision,
        )
        return snippet, updated

    def most_recent(self, story_id: int) -> Snippet | None:
        with self._store.transaction() as tx:
            return tx.latest_snippet(story_id=story_id)
