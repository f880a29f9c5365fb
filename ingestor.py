#!/usr/bin/env python3
"""
Ingestion cycle orchestration.

One cycle walks the active feeds that are due, fetches each one, normalizes
and hashes its newest items, stores the ones not seen before and enqueues an
enrichment job for every new article. Feed-level failures are recorded against
feed health and collected in the cycle result; a cycle never raises.
"""

import asyncio
from time import time
from typing import Awaitable, Callable, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from dedup import DedupStore
from enrichment import EnrichmentQueue, build_job
from errors import FetchError, ParseError, PersistenceError
from fetcher import FeedFetcher
from health import FeedHealthTracker
from identity import canonicalize_url, compute_identity
from models import DatabaseQueue
from normalizer import ContentNormalizer
from records import CanonicalArticle, CycleError, CycleResult, Feed, RawFeedItem
from telemetry import trace_span
from utils import format_duration, validate_url

logger = get_logger("ingestor")


class IngestionOrchestrator:
    """Runs single-flight ingestion cycles over the configured feeds."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: Optional[FeedFetcher] = None,
        normalizer: Optional[ContentNormalizer] = None,
        health: Optional[FeedHealthTracker] = None,
        dedup: Optional[DedupStore] = None,
        enrichment: Optional[EnrichmentQueue] = None,
        pacing_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        max_items_per_feed: Optional[int] = None,
        clock: Callable[[], float] = time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.fetcher = fetcher or FeedFetcher()
        self.normalizer = normalizer or ContentNormalizer()
        self.health = health or FeedHealthTracker(db)
        self.dedup = dedup or DedupStore(db)
        self.enrichment = enrichment or EnrichmentQueue(db)
        self.pacing_seconds = config.FEED_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        self.concurrency = max(1, concurrency or config.FEED_CONCURRENCY)
        self.max_items_per_feed = max_items_per_feed or config.MAX_ITEMS_PER_FEED
        self.clock = clock
        self.sleep = sleep
        self._cycle_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    @trace_span("ingest.cycle", tracer_name="ingestor")
    async def run_cycle(self, feeds: Optional[List[Feed]] = None,
                        session: Optional[ClientSession] = None) -> CycleResult:
        """Run one ingestion cycle.

        Args:
            feeds: Feeds to consider; defaults to the active feeds in storage.
            session: Shared HTTP session; one is created for the cycle when omitted.

        Returns:
            The aggregate CycleResult. ``skipped`` is set when another cycle was
            already running and this call did nothing.
        """
        if self._cycle_lock.locked():
            logger.info("⏭️ Ingestion cycle already running; skipping")
            return CycleResult(skipped=True)

        async with self._cycle_lock:
            result = CycleResult(started_at=self.clock())
            try:
                if feeds is None:
                    feeds = await self.db.execute('get_active_feeds')
            except PersistenceError as e:
                logger.error(f"❌ Could not load active feeds: {e}")
                result.errors.append(CycleError(feed_slug="*", kind="persistence", message=str(e)))
                return result

            now = self.clock()
            due = []
            for feed in feeds:
                if self.health.should_attempt(feed, now):
                    due.append(feed)
                else:
                    result.feeds_skipped += 1

            logger.info(f"🚀 Ingestion cycle starting: {len(due)} due of {len(feeds)} feeds")
            if due:
                if session is None:
                    async with ClientSession() as own_session:
                        await self._run_feeds(due, own_session, result)
                else:
                    await self._run_feeds(due, session, result)

            result.duration_seconds = max(0.0, self.clock() - result.started_at)
            logger.info(
                f"🎉 Ingestion cycle finished in {format_duration(result.duration_seconds)}: "
                f"{result.feeds_processed} feeds ok, {result.feeds_failed} failed, "
                f"{result.articles_ingested} new articles, {result.duplicates} duplicates, "
                f"{len(result.errors)} errors"
            )
            return result

    async def _run_feeds(self, feeds: List[Feed], session: ClientSession, result: CycleResult) -> None:
        if self.concurrency == 1:
            for index, feed in enumerate(feeds):
                if index and self.pacing_seconds > 0:
                    await self.sleep(self.pacing_seconds)
                await self.process_feed(feed, session, result)
            return

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _slot(feed: Feed) -> None:
            async with semaphore:
                await self.process_feed(feed, session, result)
                if self.pacing_seconds > 0:
                    await self.sleep(self.pacing_seconds)

        await asyncio.gather(*(_slot(feed) for feed in feeds))

    @trace_span(
        "ingest.feed",
        tracer_name="ingestor",
        attr_from_args=lambda self, feed, *a, **k: {"feed.slug": feed.slug, "feed.url": feed.url},
    )
    async def process_feed(self, feed: Feed, session: ClientSession, result: CycleResult) -> None:
        """Fetch and ingest one feed, folding its outcome into ``result``. Never raises."""
        try:
            parsed = await self.fetcher.fetch(feed.url, session)
        except FetchError as e:
            await self._record_failure(feed, "fetch", str(e), result)
            return
        except ParseError as e:
            await self._record_failure(feed, "parse", str(e), result)
            return
        except Exception as e:
            logger.exception(f"Unexpected error fetching {feed.slug}")
            await self._record_failure(feed, "unexpected", f"{type(e).__name__}: {e}", result)
            return

        items = parsed.items[:self.max_items_per_feed]
        new_articles = 0
        try:
            for item in items:
                if await self.ingest_item(feed, item, session, result):
                    new_articles += 1
        except Exception as e:
            logger.exception(f"Unexpected error ingesting items of {feed.slug}")
            await self._record_failure(feed, "unexpected", f"{type(e).__name__}: {e}", result)
            return

        try:
            await self.health.record_success(feed, now=int(self.clock()))
        except PersistenceError as e:
            logger.error(f"❌ Could not record success for {feed.slug}: {e}")
            result.errors.append(CycleError(feed_slug=feed.slug, kind="persistence", message=str(e)))
        result.feeds_processed += 1
        logger.info(f"✅ {feed.slug}: {len(items)} items considered, {new_articles} new")

    async def ingest_item(self, feed: Feed, item: RawFeedItem, session: Optional[ClientSession],
                          result: CycleResult) -> bool:
        """Normalize, dedup and persist one item. Returns True when a new article was stored."""
        if not validate_url(item.link):
            logger.debug(f"Skipping item without a usable link in {feed.slug}: {item.title!r}")
            return False

        normalized = await self.normalizer.normalize(item, feed=feed, session=session)
        url = canonicalize_url(item.link)
        now = int(self.clock())
        article = CanonicalArticle(
            identity_hash=compute_identity(normalized.title, url, feed.slug),
            feed_id=feed.id,
            feed_slug=feed.slug,
            external_id=item.guid or url,
            title=normalized.title,
            summary=normalized.summary,
            content=normalized.content,
            url=url,
            published_at=item.published or now,
            ingested_at=now,
            author=normalized.author,
            category=normalized.category,
            read_time_minutes=normalized.read_time_minutes,
            image_url=normalized.image_url,
        )

        try:
            outcome = await self.dedup.insert_if_absent(article)
        except PersistenceError as e:
            logger.error(f"❌ Could not store {url} from {feed.slug}: {e}")
            result.errors.append(CycleError(feed_slug=feed.slug, kind="persistence", message=str(e), item_url=url))
            return False

        if not outcome.inserted:
            result.duplicates += 1
            return False

        result.articles_ingested += 1
        job = build_job(outcome.stored_article, feed.name)
        try:
            await self.enrichment.enqueue(job, config.ENRICHMENT_PRIORITY, now=now)
            result.jobs_enqueued += 1
        except PersistenceError as e:
            logger.error(f"❌ Could not enqueue enrichment for article {job.article_id}: {e}")
            result.errors.append(CycleError(feed_slug=feed.slug, kind="enqueue", message=str(e), item_url=url))
        return True

    async def _record_failure(self, feed: Feed, kind: str, message: str, result: CycleResult) -> None:
        result.feeds_failed += 1
        result.errors.append(CycleError(feed_slug=feed.slug, kind=kind, message=message))
        try:
            await self.health.record_failure(feed, message, now=int(self.clock()))
        except PersistenceError as e:
            logger.error(f"❌ Could not record failure for {feed.slug}: {e}")
            result.errors.append(CycleError(feed_slug=feed.slug, kind="persistence", message=str(e)))

    async def close(self) -> None:
        await self.fetcher.close()
