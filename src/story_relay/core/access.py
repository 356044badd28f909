"""Story access resolution and grants."""

from __future__ import annotations

import logging

from story_relay.domain.errors import StorageFailure
from story_relay.domain.models import AccessLevel, Story
from story_relay.domain.ports import StoryTransaction

logger = logging.getLogger(__name__)


class AccessResolver:
    """Maps a (story, user) pair to the access level the user holds."""

    def access_for(self, tx: StoryTransaction, story: Story, user_id: str) -> AccessLevel:
        """Return the effective level, upgraded to Reader for public stories."""
        code = tx.access_code(story_id=story.story_id, user_id=user_id)
        if code is None:
            access = AccessLevel.NO_ACCESS
        else:
            try:
                access = AccessLevel(code)
            except ValueError as exc:
                raise StorageFailure(f"Invalid encoded access level [{code}]") from exc
        if story.published and story.world_readable:
            return access.upgrade_to_read()
        return access

    def grant(
        self, tx: StoryTransaction, story: Story, user_id: str, level: AccessLevel
    ) -> None:
        """Set a user's level; granting NoAccess removes the grant row."""
        if level is AccessLevel.NO_ACCESS:
            tx.delete_access(story_id=story.story_id, user_id=user_id)
        else:
            tx.upsert_access(story_id=story.story_id, user_id=user_id, access_code=int(level))
        logger.info(
            "access.granted story_id=%s user_id=%s level=%s",
            story.story_id,
            user_id,
            level.name.lower(),
        )
