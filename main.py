#!/usr/bin/env python3
"""
News ingestion service entry point.

Wires the database queue, fetcher, normalizer, health tracker, dedup store and
enrichment queue into an IngestionOrchestrator and exposes them as CLI modes:

  run         one ingestion cycle
  scheduled   cycle every SCHEDULER_INTERVAL_MINUTES plus daily maintenance
  status      feed health and enrichment queue counts
  seed        create/update feeds from feeds.yaml
  reactivate  re-enable a disabled feed (administrative action)
  test        fetch and parse a feed URL without storing anything
  cleanup     delete articles past the retention window
"""

import asyncio
import argparse
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import FetchError, ParseError
from ingestor import IngestionOrchestrator
from models import DatabaseQueue
from records import CycleResult
from scheduler import IngestionScheduler
from telemetry import init_telemetry, trace_span

logger = get_logger("main")


class IngestionService:
    """Owns the long-lived resources of the pipeline."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.orchestrator: Optional[IngestionOrchestrator] = None

    async def start(self) -> None:
        logger.debug(f"Configuration: {config.get_config_summary()}")
        await self.db.start()
        self.orchestrator = IngestionOrchestrator(self.db)

    async def close(self) -> None:
        if self.orchestrator:
            await self.orchestrator.close()
        await self.db.stop()

    async def seed_feeds(self) -> int:
        """Upsert every feed defined in feeds.yaml; returns the number of feeds written."""
        count = 0
        for definition in config.FEED_DEFINITIONS.values():
            await self.db.execute(
                'upsert_feed',
                slug=definition['slug'],
                name=definition['name'],
                url=definition['url'],
                category=definition.get('category'),
                interval_minutes=definition['interval_minutes'],
                author_fallback=definition.get('author_fallback'),
                active=definition.get('active', True),
            )
            count += 1
        logger.info(f"🌱 Seeded {count} feeds from {config.FEEDS_CONFIG_PATH}")
        return count

    async def run_once(self) -> CycleResult:
        return await self.orchestrator.run_cycle()

    @trace_span("maintenance.cleanup", tracer_name="main")
    async def cleanup(self) -> Dict[str, int]:
        articles = await self.db.execute('expire_old_articles', retention_days=config.ARTICLE_RETENTION_DAYS)
        jobs = await self.db.execute('purge_finished_jobs', older_than_days=config.ARTICLE_RETENTION_DAYS)
        logger.info(f"🧹 Cleanup removed {articles} articles and {jobs} finished jobs")
        return {'articles': articles, 'jobs': jobs}

    async def reactivate(self, slug: str) -> bool:
        ok = await self.db.execute('reactivate_feed', slug=slug)
        if ok:
            logger.info(f"♻️ Feed {slug} reactivated")
        else:
            logger.error(f"❌ No feed with slug {slug}")
        return ok

    async def test_feed(self, url: str, session: Optional[ClientSession] = None) -> Dict[str, Any]:
        """Fetch and parse ``url`` without storing anything; reports what a feed would yield."""
        try:
            parsed = await self.orchestrator.fetcher.fetch(url, session)
        except (FetchError, ParseError) as e:
            logger.error(f"❌ Feed check failed for {url}: {e}")
            return {'url': url, 'success': False, 'kind': 'fetch' if isinstance(e, FetchError) else 'parse',
                    'error': str(e), 'status': getattr(e, 'status', None)}
        logger.info(f"🔍 {url}: {len(parsed.items)} items")
        return {
            'url': url,
            'success': True,
            'title': parsed.feed_title,
            'description': parsed.feed_description,
            'item_count': len(parsed.items),
            'sample_titles': [item.title for item in parsed.items[:3]],
        }

    async def run_scheduled(self) -> None:
        scheduler = IngestionScheduler(self.run_once, maintenance=self.cleanup)
        await scheduler.run_forever()

    async def check_status(self) -> Dict[str, Any]:
        feeds = await self.db.execute('list_feeds')
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'articles': await self.db.execute('count_articles'),
            'jobs': await self.db.execute('count_enrichment_jobs'),
            'feeds': [
                {
                    'slug': feed.slug,
                    'name': feed.name,
                    'status': feed.status.value,
                    'active': feed.active,
                    'error_count': feed.error_count,
                    'last_fetch_at': feed.last_fetch_at,
                    'last_error': feed.last_error,
                }
                for feed in feeds
            ],
        }


def _format_ts(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "never"
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime('%Y-%m-%d %H:%M UTC')


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print("\n📊 News Ingestion Status")
    print(f"⏰ {status['timestamp']}")
    print(f"📰 Articles: {status['articles']}")
    jobs = status['jobs']
    print(f"🧠 Enrichment jobs: {jobs['pending']} pending, {jobs['running']} running, "
          f"{jobs['done']} done, {jobs['failed']} failed")
    print(f"\n📡 Feeds ({len(status['feeds'])}):")
    icons = {'active': '✅', 'error': '⚠️', 'disabled': '⛔'}
    for feed in status['feeds']:
        line = (f"   {icons.get(feed['status'], '?')} {feed['slug']:<20} {feed['status']:<9} "
                f"errors={feed['error_count']} last fetch: {_format_ts(feed['last_fetch_at'])}")
        if feed['last_error']:
            line += f" ({feed['last_error'][:80]})"
        print(line)


def print_cycle_result(result: CycleResult) -> None:
    if result.skipped:
        print("⏭️ Cycle skipped: another cycle is running")
        return
    print(f"\n✅ Feeds processed: {result.feeds_processed}  failed: {result.feeds_failed}  "
          f"not due: {result.feeds_skipped}")
    print(f"📰 New articles: {result.articles_ingested}  duplicates: {result.duplicates}  "
          f"jobs enqueued: {result.jobs_enqueued}")
    for error in result.errors:
        target = f" {error.item_url}" if error.item_url else ""
        print(f"   ❌ [{error.kind}] {error.feed_slug}{target}: {error.message}")


def print_feed_check(check: Dict[str, Any]) -> None:
    if not check['success']:
        print(f"\n❌ {check['url']}: [{check['kind']}] {check['error']}")
        return
    print(f"\n✅ {check['url']}")
    print(f"📰 {check['title'] or '(untitled)'}")
    if check['description']:
        print(f"📝 {check['description']}")
    print(f"📦 Items: {check['item_count']}")
    for title in check['sample_titles']:
        print(f"   • {title}")


async def _run_mode(args) -> int:
    service = IngestionService()
    await service.start()
    try:
        if args.mode == 'seed':
            await service.seed_feeds()
        elif args.mode == 'run':
            if args.seed:
                await service.seed_feeds()
            print_cycle_result(await service.run_once())
        elif args.mode == 'scheduled':
            await service.seed_feeds()
            await service.run_scheduled()
        elif args.mode == 'status':
            print_status(await service.check_status())
        elif args.mode == 'reactivate':
            if not args.target:
                logger.error("reactivate requires a feed slug")
                return 2
            return 0 if await service.reactivate(args.target) else 1
        elif args.mode == 'test':
            if not args.target:
                logger.error("test requires a feed URL")
                return 2
            check = await service.test_feed(args.target)
            print_feed_check(check)
            return 0 if check['success'] else 1
        elif args.mode == 'cleanup':
            await service.cleanup()
        return 0
    finally:
        await service.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='News feed ingestion service')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'seed', 'reactivate', 'test', 'cleanup'],
                        help='Operation mode')
    parser.add_argument('target', nargs='?', help='Feed slug (reactivate mode) or feed URL (test mode)')
    parser.add_argument('--seed', action='store_true', help='Seed feeds from feeds.yaml before a run')
    args = parser.parse_args()

    init_telemetry("news-ingest")
    try:
        sys.exit(asyncio.run(_run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Ingestion service shutting down")


if __name__ == "__main__":
    main()
