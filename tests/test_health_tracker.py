import asyncio

import pytest

from health import FeedHealthTracker
from models import DatabaseQueue
from records import Feed, FeedStatus


async def _seed_feed(db, slug="gabonreview", interval_minutes=15):
    feed_id = await db.execute(
        'upsert_feed', slug=slug, name="Gabon Review", url=f"https://{slug}.example.com/rss",
        interval_minutes=interval_minutes, now=1_700_000_000,
    )
    return await db.execute('get_feed', feed_id=feed_id)


@pytest.mark.asyncio
async def test_feed_disabled_after_five_consecutive_failures(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed = await _seed_feed(db)
        tracker = FeedHealthTracker(db, max_errors=5)

        statuses = []
        for _ in range(5):
            health = await tracker.record_failure(feed, "HTTP 500")
            statuses.append((health.status, health.error_count))

        assert statuses[:4] == [(FeedStatus.ERROR, n) for n in range(1, 5)]
        assert statuses[4] == (FeedStatus.DISABLED, 5)

        stored = await db.execute('get_feed', feed_id=feed.id)
        assert stored.active is False
        assert stored.last_error == "HTTP 500"
        assert await db.execute('get_active_feeds') == []

        sixth = await tracker.record_failure(feed, "HTTP 500")
        assert sixth.changed is False
        assert sixth.error_count == 5, "failures after disable must not be counted"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_success_resets_error_count(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed = await _seed_feed(db)
        tracker = FeedHealthTracker(db, max_errors=5)

        for _ in range(3):
            await tracker.record_failure(feed, "timeout")
        assert feed.error_count == 3
        health = await tracker.record_success(feed, now=1_700_000_500)

        assert health.status == FeedStatus.ACTIVE
        assert health.error_count == 0
        assert feed.error_count == 0
        assert feed.last_success_at == 1_700_000_500

        stored = await db.execute('get_feed', feed_id=feed.id)
        assert stored.last_error is None
        assert stored.last_success_at == 1_700_000_500

        # the streak starts again from zero: five fresh failures are needed
        for _ in range(4):
            health = await tracker.record_failure(feed, "timeout")
        assert health.status == FeedStatus.ERROR
        assert health.error_count == 4

        health = await tracker.record_failure(feed, "timeout")
        assert health.status == FeedStatus.DISABLED
        assert health.error_count == 5
        assert feed.schedulable is False
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_concurrent_failures_are_counted_once_each(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed = await _seed_feed(db)
        tracker = FeedHealthTracker(db, max_errors=5)

        results = await asyncio.gather(*(tracker.record_failure(feed, "boom") for _ in range(8)))

        assert sum(1 for r in results if r.changed) == 5
        assert sum(1 for r in results if r.changed and r.status == FeedStatus.DISABLED) == 1
        stored = await db.execute('get_feed', feed_id=feed.id)
        assert stored.error_count == 5
        assert stored.status == FeedStatus.DISABLED
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_reactivate_restores_disabled_feed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed = await _seed_feed(db)
        tracker = FeedHealthTracker(db, max_errors=1)
        await tracker.record_failure(feed, "gone")

        assert await db.execute('reactivate_feed', slug=feed.slug) is True
        stored = await db.execute('get_feed', feed_id=feed.id)
        assert stored.status == FeedStatus.ACTIVE
        assert stored.error_count == 0
        assert stored.active is True
        assert await db.execute('reactivate_feed', slug="unknown") is False
    finally:
        await db.stop()


def test_should_attempt_honours_interval_and_backoff():
    tracker = FeedHealthTracker(db=None, max_errors=5, backoff_enabled=True,
                                backoff_base_minutes=15, max_backoff_minutes=360)
    now = 1_700_000_000
    fresh = Feed(id=1, slug="a", name="A", url="https://a.example.com/rss")
    recent = Feed(id=2, slug="b", name="B", url="https://b.example.com/rss", last_fetch_at=now - 10 * 60)
    due = Feed(id=3, slug="c", name="C", url="https://c.example.com/rss", last_fetch_at=now - 16 * 60)
    failing = Feed(id=4, slug="d", name="D", url="https://d.example.com/rss", error_count=3,
                   status=FeedStatus.ERROR, last_fetch_at=now - 30 * 60)
    disabled = Feed(id=5, slug="e", name="E", url="https://e.example.com/rss", active=False,
                    status=FeedStatus.DISABLED)

    assert tracker.should_attempt(fresh, now)
    assert not tracker.should_attempt(recent, now)
    assert tracker.should_attempt(due, now)
    assert not tracker.should_attempt(failing, now), "third failure waits 60 minutes"
    assert tracker.should_attempt(failing, now + 31 * 60)
    assert not tracker.should_attempt(disabled, now)


def test_backoff_delay_is_exponential_and_capped():
    tracker = FeedHealthTracker(db=None, backoff_enabled=True, backoff_base_minutes=15, max_backoff_minutes=360)

    assert tracker.calculate_backoff_delay(0) == 0
    assert tracker.calculate_backoff_delay(1) == 15 * 60
    assert tracker.calculate_backoff_delay(2) == 30 * 60
    assert tracker.calculate_backoff_delay(10) == 360 * 60

    disabled = FeedHealthTracker(db=None, backoff_enabled=False)
    assert disabled.calculate_backoff_delay(4) == 0
