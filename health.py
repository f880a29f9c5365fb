#!/usr/bin/env python3
"""
Per-feed health tracking.

States are active, error and disabled. Failures increment a consecutive error
counter; reaching the threshold disables the feed, and any success resets the
counter. Each transition is a single conditional UPDATE on the serialized
database queue, and calls for the same feed are additionally serialized with
an in-process lock.

Before the threshold is reached, a failing feed is retried with exponential
spacing instead of at its normal interval.
"""

from asyncio import Lock
from time import time
from typing import Dict, Optional

from config import config, get_logger
from models import DatabaseQueue
from records import Feed, FeedHealth, FeedStatus
from utils import exponential_delay

logger = get_logger("health")

SECONDS_PER_MINUTE = 60


class FeedHealthTracker:
    def __init__(self, db: DatabaseQueue, max_errors: Optional[int] = None,
                 backoff_enabled: Optional[bool] = None,
                 backoff_base_minutes: Optional[int] = None,
                 max_backoff_minutes: Optional[int] = None) -> None:
        self.db = db
        self.max_errors = max_errors or config.MAX_CONSECUTIVE_ERRORS
        self.backoff_enabled = config.FEED_BACKOFF_ENABLED if backoff_enabled is None else backoff_enabled
        self.backoff_base_minutes = backoff_base_minutes or config.BACKOFF_BASE_MINUTES
        self.max_backoff_minutes = max_backoff_minutes or config.MAX_BACKOFF_MINUTES
        self._locks: Dict[int, Lock] = {}

    def _lock_for(self, feed_id: int) -> Lock:
        lock = self._locks.get(feed_id)
        if lock is None:
            lock = self._locks[feed_id] = Lock()
        return lock

    def calculate_backoff_delay(self, error_count: int) -> float:
        """Backoff in seconds after ``error_count`` consecutive failures (0 when healthy)."""
        if error_count <= 0 or not self.backoff_enabled:
            return 0
        minutes = exponential_delay(self.backoff_base_minutes, error_count, self.max_backoff_minutes)
        return minutes * SECONDS_PER_MINUTE

    def should_attempt(self, feed: Feed, now: Optional[float] = None) -> bool:
        """Return True when the feed is schedulable and its interval (or backoff) has elapsed."""
        if not feed.schedulable:
            return False
        if not feed.last_fetch_at:
            return True

        current_time = time() if now is None else now
        elapsed = current_time - int(feed.last_fetch_at)
        threshold = max(feed.fetch_interval_minutes * SECONDS_PER_MINUTE,
                        self.calculate_backoff_delay(feed.error_count))
        if elapsed < threshold:
            logger.debug(
                f"Skipping {feed.slug}, fetched {int(elapsed)}s ago "
                f"(interval {feed.fetch_interval_minutes}m, error count {feed.error_count})"
            )
            return False
        return True

    def _apply(self, feed: Feed, health: FeedHealth, now: Optional[int], error: Optional[str] = None) -> None:
        """Mirror a stored transition onto the caller's Feed so later due checks see it."""
        feed.status = health.status
        feed.error_count = health.error_count
        feed.active = health.active
        if not health.changed:
            return
        feed.last_fetch_at = int(time()) if now is None else now
        if error is None:
            feed.last_success_at = feed.last_fetch_at
            feed.last_error = None
        else:
            feed.last_error = error

    async def record_success(self, feed: Feed, now: Optional[int] = None) -> Optional[FeedHealth]:
        async with self._lock_for(feed.id):
            health = await self.db.execute('record_feed_success', feed_id=feed.id, now=now)
        if health is None:
            return None
        if health.changed and feed.error_count:
            logger.info(f"Feed {feed.slug} recovered after {feed.error_count} consecutive errors")
        self._apply(feed, health, now)
        return health

    async def record_failure(self, feed: Feed, error: str, now: Optional[int] = None) -> Optional[FeedHealth]:
        async with self._lock_for(feed.id):
            health = await self.db.execute(
                'record_feed_failure', feed_id=feed.id, error=error, max_errors=self.max_errors, now=now,
            )
        if health is None:
            logger.error(f"Cannot record failure for unknown feed id {feed.id}")
            return None
        self._apply(feed, health, now, error=error)
        if not health.changed:
            logger.debug(f"Feed {feed.slug} already disabled; failure not recorded")
        elif health.status == FeedStatus.DISABLED:
            logger.warning(
                f"Feed {feed.slug} disabled after {health.error_count} consecutive errors (last: {error})"
            )
        else:
            backoff = self.calculate_backoff_delay(health.error_count)
            logger.warning(
                f"Feed {feed.slug} error count increased to {health.error_count}/{self.max_errors}: {error}. "
                f"Next attempt in {backoff / SECONDS_PER_MINUTE:.0f} minutes at the earliest"
            )
        return health
