"""Turn alternation: who may take a story lock again, and when."""

from __future__ import annotations

from story_relay.domain.models import Story
from story_relay.domain.ports import StoryTransaction


def permits(attempt: int | None, current: int) -> bool:
    """Return whether a user whose last lock saw `attempt` may lock at `current`.

    Permitted on a first attempt, when nothing was contributed since the last
    attempt (renewing before writing), or when at least one other contribution
    followed the user's own. Denied only when the user's own contribution is
    the single revision made since they last locked the story.
    """
    if attempt is None:
        return True
    return attempt == current or attempt + 2 <= current


class CooldownTracker:
    """Remembers the revision each user saw when they last locked a story."""

    def most_recent_attempt(self, tx: StoryTransaction, story: Story, user_id: str) -> int | None:
        return tx.attempt(story_id=story.story_id, user_id=user_id)

    def record(self, tx: StoryTransaction, story: Story, user_id: str, revision: int) -> None:
        tx.upsert_attempt(story_id=story.story_id, user_id=user_id, revision=revision)

    def allows(self, tx: StoryTransaction, story: Story, user_id: str) -> bool:
        return permits(self.most_recent_attempt(tx, story, user_id), story.revision_count)
