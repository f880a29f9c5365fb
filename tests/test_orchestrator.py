import asyncio

import pytest

from dedup import DedupStore, RecentHashCache
from errors import FetchError, ParseError, PersistenceError
from health import FeedHealthTracker
from identity import compute_identity
from ingestor import IngestionOrchestrator
from models import DatabaseQueue
from normalizer import ContentNormalizer
from records import FeedStatus, ParsedFeed, RawFeedItem

START = 1_717_400_000
REVIEW_URL = "https://www.gabonreview.com/rss"
ECO_URL = "https://www.gaboneco.com/rss"
SESSION = object()


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += minutes * 60


class FakeFetcher:
    """Returns canned ParsedFeed objects (or raises canned errors) per URL."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    async def fetch(self, feed_url, session=None):
        self.calls.append(feed_url)
        outcome = self.outcomes[feed_url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        pass


def item(title, link, published=START - 3600, **kwargs):
    kwargs.setdefault("description", f"<p>{title}.</p>")
    return RawFeedItem(title=title, link=link, published=published, **kwargs)


async def seed(db, slug, url, name):
    return await db.execute('upsert_feed', slug=slug, name=name, url=url, interval_minutes=15, now=START - 86400)


def make_orchestrator(db, fetcher, clock, sleeps=None, **kwargs):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return IngestionOrchestrator(
        db,
        fetcher=fetcher,
        normalizer=ContentNormalizer(scrape_images=False),
        health=FeedHealthTracker(db, max_errors=5, backoff_enabled=False),
        dedup=DedupStore(db, cache=RecentHashCache(900, 100)),
        pacing_seconds=kwargs.pop("pacing_seconds", 2.0),
        clock=clock,
        sleep=fake_sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_new_article_is_stored_and_enqueued(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        link = "https://www.gabonreview.com/route-franceville/?utm_source=rss"
        fetcher = FakeFetcher({REVIEW_URL: ParsedFeed(items=[item("Nouvelle route à Franceville", link)])})
        orchestrator = make_orchestrator(db, fetcher, FakeClock())

        result = await orchestrator.run_cycle(session=SESSION)

        assert result.skipped is False
        assert result.feeds_processed == 1
        assert result.articles_ingested == 1
        assert result.jobs_enqueued == 1
        assert result.errors == []

        canonical = "https://www.gabonreview.com/route-franceville/"
        stored = await db.execute('get_article_by_hash',
                                  identity_hash=compute_identity("Nouvelle route à Franceville", canonical, "gabonreview"))
        assert stored is not None
        assert stored.url == canonical
        assert stored.feed_id == feed_id
        assert stored.published_at == START - 3600
        assert stored.ingested_at == START

        assert await db.execute('claim_enrichment_jobs', limit=10, now=START - 1) == [], \
            "job availability follows the cycle clock"
        jobs = await db.execute('claim_enrichment_jobs', limit=10, now=START + 1)
        assert len(jobs) == 1
        assert jobs[0]['priority'] == 1
        assert jobs[0]['payload']['article_id'] == stored.id
        assert jobs[0]['payload']['source_name'] == "Gabon Review"

        feed = await db.execute('get_feed', feed_id=feed_id)
        assert feed.last_success_at == START
        assert feed.error_count == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_same_item_in_later_cycle_is_a_duplicate(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        entry = item("Conseil des ministres", "https://www.gabonreview.com/conseil/")
        clock = FakeClock()
        orchestrator = make_orchestrator(db, FakeFetcher({REVIEW_URL: ParsedFeed(items=[entry])}), clock)

        first = await orchestrator.run_cycle(session=SESSION)
        clock.advance(16)
        second = await orchestrator.run_cycle(session=SESSION)

        assert first.articles_ingested == 1
        assert second.articles_ingested == 0
        assert second.duplicates == 1
        assert second.jobs_enqueued == 0
        assert await db.execute('count_articles') == 1
        assert (await db.execute('count_enrichment_jobs'))['pending'] == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_feed_not_due_is_skipped(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        fetcher = FakeFetcher({REVIEW_URL: ParsedFeed(items=[])})
        clock = FakeClock()
        orchestrator = make_orchestrator(db, fetcher, clock)

        await orchestrator.run_cycle(session=SESSION)
        clock.advance(5)
        result = await orchestrator.run_cycle(session=SESSION)

        assert fetcher.calls == [REVIEW_URL]
        assert result.feeds_skipped == 1
        assert result.feeds_processed == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failing_feed_is_disabled_and_no_longer_fetched(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = await seed(db, "gaboneco", ECO_URL, "Gabon Eco")
        fetcher = FakeFetcher({ECO_URL: FetchError("HTTP 500", url=ECO_URL, status=500)})
        clock = FakeClock()
        orchestrator = make_orchestrator(db, fetcher, clock)

        for _ in range(5):
            result = await orchestrator.run_cycle(session=SESSION)
            assert result.feeds_failed == 1
            assert result.errors[0].kind == "fetch"
            clock.advance(20)

        feed = await db.execute('get_feed', feed_id=feed_id)
        assert feed.status == FeedStatus.DISABLED
        assert feed.error_count == 5

        result = await orchestrator.run_cycle(session=SESSION)
        assert len(fetcher.calls) == 5, "disabled feed must not be fetched again"
        assert result.feeds_failed == 0
        assert result.feeds_processed == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_one_bad_feed_does_not_stop_the_others(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gaboneco", ECO_URL, "Gabon Eco")
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        fetcher = FakeFetcher({
            ECO_URL: ParseError("Not a recognizable RSS/Atom feed", url=ECO_URL),
            REVIEW_URL: ParsedFeed(items=[item("Titre", "https://www.gabonreview.com/titre/")]),
        })
        sleeps = []
        orchestrator = make_orchestrator(db, fetcher, FakeClock(), sleeps=sleeps)

        result = await orchestrator.run_cycle(session=SESSION)

        assert fetcher.calls == [ECO_URL, REVIEW_URL]
        assert result.feeds_failed == 1
        assert result.feeds_processed == 1
        assert result.articles_ingested == 1
        assert [e.kind for e in result.errors] == ["parse"]
        assert sleeps == [2.0], "pacing applies between feeds, not before the first"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_missing_publication_date_uses_ingestion_time(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "info241", "https://www.info241.com/feed", "Info241")
        entry = item("Sans date", "https://www.info241.com/sans-date", published=None)
        orchestrator = make_orchestrator(db, FakeFetcher({"https://www.info241.com/feed": ParsedFeed(items=[entry])}),
                                         FakeClock())

        await orchestrator.run_cycle(session=SESSION)

        stored = await db.execute(
            'get_article_by_hash',
            identity_hash=compute_identity("Sans date", "https://www.info241.com/sans-date", "info241"),
        )
        assert stored.published_at == START
        assert stored.author == "Rédaction"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_items_are_capped_and_linkless_items_skipped(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        items = [
            item("Sans lien", ""),
            item("Deux", "https://www.gabonreview.com/deux/"),
            item("Trois", "https://www.gabonreview.com/trois/"),
        ]
        orchestrator = make_orchestrator(db, FakeFetcher({REVIEW_URL: ParsedFeed(items=items)}), FakeClock(),
                                         max_items_per_feed=2)

        result = await orchestrator.run_cycle(session=SESSION)

        assert result.articles_ingested == 1
        assert await db.execute('count_articles') == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_persistence_errors_are_collected(tmp_path, monkeypatch):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        fetcher = FakeFetcher({REVIEW_URL: ParsedFeed(items=[item("Titre", "https://www.gabonreview.com/titre/")])})
        orchestrator = make_orchestrator(db, fetcher, FakeClock())

        async def broken_insert(article):
            raise PersistenceError("disk I/O error", operation="insert_article")

        monkeypatch.setattr(orchestrator.dedup, "insert_if_absent", broken_insert)

        result = await orchestrator.run_cycle(session=SESSION)

        assert result.feeds_processed == 1
        assert result.articles_ingested == 0
        assert len(result.errors) == 1
        assert result.errors[0].kind == "persistence"
        assert result.errors[0].item_url == "https://www.gabonreview.com/titre/"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowFetcher(FakeFetcher):
            async def fetch(self, feed_url, session=None):
                started.set()
                await release.wait()
                return await super().fetch(feed_url, session)

        orchestrator = make_orchestrator(db, SlowFetcher({REVIEW_URL: ParsedFeed(items=[])}), FakeClock())

        first = asyncio.create_task(orchestrator.run_cycle(session=SESSION))
        await started.wait()
        assert orchestrator.running

        overlapping = await orchestrator.run_cycle(session=SESSION)
        release.set()
        completed = await first

        assert overlapping.skipped is True
        assert completed.skipped is False
        assert completed.feeds_processed == 1
        assert not orchestrator.running
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_explicit_feed_list_sees_disable_from_earlier_cycles(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = await seed(db, "gaboneco", ECO_URL, "Gabon Eco")
        feeds = [await db.execute('get_feed', feed_id=feed_id)]
        fetcher = FakeFetcher({ECO_URL: FetchError("HTTP 500", url=ECO_URL, status=500)})
        clock = FakeClock()
        orchestrator = make_orchestrator(db, fetcher, clock)

        for _ in range(5):
            await orchestrator.run_cycle(feeds, session=SESSION)
            clock.advance(20)

        assert feeds[0].status == FeedStatus.DISABLED
        assert feeds[0].active is False

        result = await orchestrator.run_cycle(feeds, session=SESSION)
        assert len(fetcher.calls) == 5
        assert result.feeds_skipped == 1
        assert result.feeds_failed == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_explicit_feed_list_respects_interval_after_success(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        feed_id = await seed(db, "gabonreview", REVIEW_URL, "Gabon Review")
        feeds = [await db.execute('get_feed', feed_id=feed_id)]
        fetcher = FakeFetcher({REVIEW_URL: ParsedFeed(items=[])})
        clock = FakeClock()
        orchestrator = make_orchestrator(db, fetcher, clock)

        await orchestrator.run_cycle(feeds, session=SESSION)
        assert feeds[0].last_fetch_at == START
        assert feeds[0].last_success_at == START

        clock.advance(1)
        result = await orchestrator.run_cycle(feeds, session=SESSION)

        assert fetcher.calls == [REVIEW_URL]
        assert result.feeds_skipped == 1

        clock.advance(15)
        await orchestrator.run_cycle(feeds, session=SESSION)
        assert fetcher.calls == [REVIEW_URL, REVIEW_URL]
    finally:
        await db.stop()
