#!/usr/bin/env python3
"""
Dedup store adapter.

Storage is the source of truth: insert_if_absent always attempts the INSERT
and treats the identity_hash uniqueness conflict as "already exists". The
recent-hash cache only saves a round trip for hashes seen moments ago.
"""

from collections import OrderedDict
from time import monotonic
from typing import Callable, Optional

from config import config, get_logger
from models import DatabaseQueue
from records import CanonicalArticle, InsertResult
from telemetry import trace_span

logger = get_logger("dedup")


class RecentHashCache:
    """Bounded set of recently seen identity hashes with time-based eviction."""

    def __init__(self, ttl_seconds: float, max_size: int, clock: Callable[[], float] = monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def _evict(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        while self._entries:
            seen_at = next(iter(self._entries.values()))
            if seen_at > cutoff and len(self._entries) <= self.max_size:
                break
            self._entries.popitem(last=False)

    def add(self, identity_hash: str) -> None:
        self._entries.pop(identity_hash, None)
        self._entries[identity_hash] = self._clock()
        self._evict()

    def __contains__(self, identity_hash: str) -> bool:
        self._evict()
        return identity_hash in self._entries

    def __len__(self) -> int:
        self._evict()
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class DedupStore:
    def __init__(self, db: DatabaseQueue, cache: Optional[RecentHashCache] = None) -> None:
        self.db = db
        self.cache = cache or RecentHashCache(config.DEDUP_CACHE_TTL_SECONDS, config.DEDUP_CACHE_MAX_SIZE)

    async def exists(self, identity_hash: str) -> bool:
        if identity_hash in self.cache:
            return True
        found = await self.db.execute('exists_by_hash', identity_hash=identity_hash)
        if found:
            self.cache.add(identity_hash)
        return found

    @trace_span(
        "dedup.insert_if_absent",
        tracer_name="dedup",
        attr_from_args=lambda self, article: {"article.hash": article.identity_hash},
    )
    async def insert_if_absent(self, article: CanonicalArticle) -> InsertResult:
        """Persist the article unless its identity hash is already stored.

        Raises:
            PersistenceError: storage failed for a reason other than the uniqueness conflict.
        """
        if article.identity_hash in self.cache:
            existing = await self.db.execute('get_article_by_hash', identity_hash=article.identity_hash)
            if existing is not None:
                logger.debug(f"Duplicate (cached) {article.identity_hash[:12]} for {article.url}")
                return InsertResult(inserted=False, stored_article=existing)

        result = await self.db.execute('insert_article', article=article)
        self.cache.add(article.identity_hash)
        if not result.inserted:
            logger.debug(f"Duplicate {article.identity_hash[:12]} for {article.url}")
        return result
