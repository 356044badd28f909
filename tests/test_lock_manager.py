from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from story_relay.adapters.sqlite_story_store import SQLiteStoryStore
from story_relay.core.access import AccessResolver
from story_relay.core.contributions import ContributionRecorder
from story_relay.core.cooldown import CooldownTracker
from story_relay.core.locking import LockManager
from story_relay.domain.errors import AlreadyLocked, Cooldown, NotFound, ReleaseFailed, Unlocked
from story_relay.domain.models import AccessLevel, Story, UserRef

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
DURATION = timedelta(minutes=10)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class Harness:
    def __init__(self, tmp_path: Path, *names: str) -> None:
        self.store = SQLiteStoryStore(db_path=tmp_path / "stories.db")
        self.clock = FakeClock(START)
        self.users: dict[str, UserRef] = {}
        for name in names:
            stored = self.store.create_user(
                email=f"{name.lower()}@example.com", display_name=name, password_hash="hash"
            )
            assert stored is not None
            self.users[name] = UserRef(user_id=stored.user_id, display_name=name)
        self.cooldown = CooldownTracker()
        self.locks = LockManager(self.store, cooldown=self.cooldown, clock=self.clock)
        self.recorder = ContributionRecorder(self.store, clock=self.clock, lock_duration=DURATION)

    def story(self, owner: str, *writers: str) -> Story:
        story = self.recorder.begin(self.users[owner], title="Relay", opening="It began.")
        with self.store.transaction(exclusive=True) as tx:
            for name in writers:
                AccessResolver().grant(tx, story, self.users[name].user_id, AccessLevel.WRITER)
        return story

    def grant(self, story: Story, name: str, level: AccessLevel) -> None:
        with self.store.transaction(exclusive=True) as tx:
            AccessResolver().grant(tx, story, self.users[name].user_id, level)

    def acquire(self, story: Story, name: str, want_acquire: bool = True) -> Story:
        locked = self.locks.acquire(story.story_id, self.users[name], want_acquire)
        with self.store.transaction(exclusive=True) as tx:
            self.cooldown.record(tx, locked, self.users[name].user_id, locked.revision_count)
        return locked

    def write_turn(self, story: Story, name: str, content: str) -> Story:
        self.acquire(story, name)
        _, updated = self.recorder.contribute(story.story_id, self.users[name], content)
        return updated

    def reload(self, story: Story) -> Story:
        with self.store.transaction() as tx:
            loaded = tx.story(story.story_id)
        assert loaded is not None
        assert (loaded.lock_holder is None) == (loaded.lock_expiration is None)
        return loaded


def test_first_acquisition_locks_for_the_story_duration(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann")
    story = harness.story("Ann")

    locked = harness.acquire(story, "Ann")

    assert locked.lock_holder == harness.users["Ann"].user_id
    assert locked.lock_expiration == START + DURATION
    assert harness.reload(story) == locked


def test_missing_story_and_insufficient_access_both_report_not_found(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Rita", "Stranger")
    story = harness.story("Ann")
    harness.grant(story, "Rita", AccessLevel.READER)

    for name, story_id in (
        ("Ann", story.story_id + 99),
        ("Rita", story.story_id),
        ("Stranger", story.story_id),
    ):
        with pytest.raises(NotFound):
            harness.locks.acquire(story_id, harness.users[name], True)
    assert harness.reload(story).lock_holder is None


def test_insufficient_access_reports_not_found_whatever_the_lock_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Rita", "Stranger")
    story = harness.story("Ann")
    harness.grant(story, "Rita", AccessLevel.READER)
    locked = harness.acquire(story, "Ann")

    for want_acquire in (True, False):
        for name in ("Rita", "Stranger"):
            with pytest.raises(NotFound):
                harness.locks.acquire(story.story_id, harness.users[name], want_acquire)
    assert harness.reload(story) == locked

    harness.clock.advance(DURATION + timedelta(seconds=1))
    for want_acquire in (True, False):
        for name in ("Rita", "Stranger"):
            with pytest.raises(NotFound):
                harness.locks.acquire(story.story_id, harness.users[name], want_acquire)
    assert harness.reload(story) == locked


def test_lock_held_by_another_user_is_reported_with_holder_name(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    locked = harness.acquire(story, "Ann")
    harness.clock.advance(timedelta(minutes=3))

    with pytest.raises(AlreadyLocked) as raised:
        harness.acquire(story, "Bea")

    assert raised.value.holder_name == "Ann"
    assert raised.value.expiration == START + DURATION
    assert harness.reload(story) == locked


def test_lock_is_still_valid_at_the_exact_expiration_instant(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    harness.acquire(story, "Ann")
    harness.clock.advance(DURATION)

    with pytest.raises(AlreadyLocked):
        harness.acquire(story, "Bea")


def test_expired_lock_can_be_taken_by_another_writer(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    harness.acquire(story, "Ann")
    harness.clock.advance(DURATION + timedelta(seconds=1))

    taken = harness.acquire(story, "Bea")

    assert taken.lock_holder == harness.users["Bea"].user_id
    assert taken.lock_expiration == harness.clock.now + DURATION


def test_confirm_only_acquisition_requires_a_held_or_valid_lock(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")

    with pytest.raises(Unlocked):
        harness.locks.acquire(story.story_id, harness.users["Ann"], False)
    assert harness.reload(story).lock_holder is None

    harness.acquire(story, "Ann")
    with pytest.raises(AlreadyLocked):
        harness.locks.acquire(story.story_id, harness.users["Bea"], False)

    harness.clock.advance(timedelta(minutes=4))
    renewed = harness.locks.acquire(story.story_id, harness.users["Ann"], False)
    assert renewed.lock_expiration == harness.clock.now + DURATION


def test_holder_may_renew_before_contributing(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann")
    story = harness.story("Ann")
    harness.acquire(story, "Ann")
    harness.clock.advance(timedelta(minutes=5))

    renewed = harness.acquire(story, "Ann")

    assert renewed.lock_holder == harness.users["Ann"].user_id
    assert renewed.lock_expiration == START + timedelta(minutes=5) + DURATION


def test_writer_must_wait_for_another_contribution(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")

    after_ann = harness.write_turn(story, "Ann", "Ann writes.")
    assert after_ann.revision_count == 1
    with pytest.raises(Cooldown):
        harness.acquire(story, "Ann")
    assert harness.reload(story).lock_holder is None

    harness.write_turn(story, "Bea", "Bea writes.")
    again = harness.acquire(story, "Ann")
    assert again.revision_count == 2
    assert again.lock_holder == harness.users["Ann"].user_id


def test_release_by_non_holder_fails_without_mutation(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    locked = harness.acquire(story, "Ann")

    with pytest.raises(ReleaseFailed):
        harness.locks.release(locked, holder_id=harness.users["Bea"].user_id)
    with pytest.raises(ReleaseFailed):
        harness.locks.release(story)

    assert harness.reload(story) == locked
    harness.locks.release(locked)
    assert harness.reload(story).lock_holder is None


def test_stale_release_cannot_clear_a_newer_holders_lock(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    ann_lock = harness.acquire(story, "Ann")
    harness.clock.advance(DURATION + timedelta(minutes=1))
    bea_lock = harness.acquire(story, "Bea")

    with pytest.raises(ReleaseFailed):
        harness.locks.release(ann_lock)

    assert harness.reload(story) == bea_lock


def test_save_preserves_the_current_lock(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann")
    story = harness.story("Ann")
    locked = harness.acquire(story, "Ann")

    harness.locks.save(replace(story, title="Renamed"))

    reloaded = harness.reload(story)
    assert reloaded.title == "Renamed"
    assert reloaded.lock_holder == locked.lock_holder
    assert reloaded.lock_expiration == locked.lock_expiration
    with pytest.raises(NotFound):
        harness.locks.save(replace(story, story_id=story.story_id + 50))


def test_concurrent_acquirers_get_exactly_one_lock(tmp_path: Path) -> None:
    names = [f"Writer{index}" for index in range(8)]
    harness = Harness(tmp_path, "Ann", *names)
    story = harness.story("Ann", *names)
    barrier = threading.Barrier(len(names))
    outcomes: list[object] = []

    def attempt(name: str) -> None:
        barrier.wait()
        try:
            outcomes.append(harness.locks.acquire(story.story_id, harness.users[name], True))
        except AlreadyLocked as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    winners = [outcome for outcome in outcomes if isinstance(outcome, Story)]
    losers = [outcome for outcome in outcomes if isinstance(outcome, AlreadyLocked)]
    assert len(outcomes) == len(names)
    assert len(winners) == 1
    assert len(losers) == len(names) - 1
    assert harness.reload(story).lock_holder == winners[0].lock_holder
    assert {loser.holder_name for loser in losers} == {
        harness.users[name].display_name
        for name in names
        if harness.users[name].user_id == winners[0].lock_holder
    }


def test_contribution_releases_the_lock_in_the_same_commit(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann")
    story = harness.story("Ann")

    updated = harness.write_turn(story, "Ann", "Ann writes.")

    assert updated.lock_holder is None
    assert updated.lock_expiration is None
    reloaded = harness.reload(story)
    assert reloaded.revision_count == 1
    assert reloaded.lock_holder is None
    assert harness.recorder.most_recent(story.story_id).content == "Ann writes."


def test_contribution_under_a_lapsed_lock_writes_nothing(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann")
    story = harness.story("Ann")
    locked = harness.acquire(story, "Ann")
    harness.clock.advance(DURATION + timedelta(seconds=1))

    with pytest.raises(Unlocked):
        harness.recorder.contribute(story.story_id, harness.users["Ann"], "Too late.")

    assert harness.reload(story) == locked
    assert harness.recorder.most_recent(story.story_id).content == "It began."


def test_contribution_after_a_takeover_writes_nothing(tmp_path: Path) -> None:
    harness = Harness(tmp_path, "Ann", "Bea")
    story = harness.story("Ann", "Bea")
    harness.acquire(story, "Ann")
    harness.clock.advance(DURATION + timedelta(seconds=1))
    bea_lock = harness.acquire(story, "Bea")

    with pytest.raises(Unlocked):
        harness.recorder.contribute(story.story_id, harness.users["Ann"], "Stale turn.")

    assert harness.reload(story) == bea_lock
    assert harness.reload(story).revision_count == 0
    assert harness.recorder.most_recent(story.story_id).content == "It began."
