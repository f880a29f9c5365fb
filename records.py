#!/usr/bin/env python3
"""Typed records passed between pipeline stages.

Raw parser output is converted into these records once, at the ingestion
boundary, so downstream code never has to probe for missing attributes.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class FeedStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


@dataclass
class Feed:
    """A configured RSS source as stored in the feeds table."""
    id: int
    slug: str
    name: str
    url: str
    category: Optional[str] = None
    active: bool = True
    fetch_interval_minutes: int = 15
    error_count: int = 0
    status: FeedStatus = FeedStatus.ACTIVE
    last_fetch_at: Optional[int] = None
    last_success_at: Optional[int] = None
    last_error: Optional[str] = None
    author_fallback: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Feed":
        return cls(
            id=row["id"],
            slug=row["slug"],
            name=row["name"] or row["slug"],
            url=row["url"],
            category=row.get("category"),
            active=bool(row.get("active", 1)),
            fetch_interval_minutes=int(row.get("fetch_interval_minutes") or 15),
            error_count=int(row.get("error_count") or 0),
            status=FeedStatus(row.get("status") or FeedStatus.ACTIVE.value),
            last_fetch_at=row.get("last_fetch_at"),
            last_success_at=row.get("last_success_at"),
            last_error=row.get("last_error"),
            author_fallback=row.get("author_fallback"),
        )

    @property
    def schedulable(self) -> bool:
        return self.active and self.status != FeedStatus.DISABLED


@dataclass
class FeedHealth:
    """Feed health state right after a transition."""
    feed_id: int
    status: FeedStatus
    error_count: int
    active: bool
    changed: bool = True


@dataclass
class RawFeedItem:
    """One entry as produced by the feed parser, before normalization."""
    title: str = ""
    link: str = ""
    content: str = ""
    description: str = ""
    published: Optional[int] = None
    guid: Optional[str] = None
    creator: Optional[str] = None
    author: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    enclosures: List[Dict[str, Any]] = field(default_factory=list)
    media_content: List[Dict[str, Any]] = field(default_factory=list)
    media_thumbnails: List[Dict[str, Any]] = field(default_factory=list)
    og_image: Optional[str] = None


@dataclass
class ParsedFeed:
    feed_title: str = ""
    feed_description: str = ""
    items: List[RawFeedItem] = field(default_factory=list)


@dataclass
class NormalizedContent:
    title: str
    summary: str
    content: str
    image_url: Optional[str]
    author: str
    category: str
    read_time_minutes: int


@dataclass
class CanonicalArticle:
    """Normalized, persistable article. Enrichment fields stay empty until the worker fills them."""
    identity_hash: str
    feed_id: int
    feed_slug: str
    external_id: str
    title: str
    summary: str
    content: str
    url: str
    published_at: int
    ingested_at: int
    author: str
    category: str
    read_time_minutes: int
    image_url: Optional[str] = None
    ai_summary: Optional[str] = None
    sentiment: Optional[str] = None
    keywords: Optional[List[str]] = None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        # keywords are written by the enrichment worker, never by ingestion
        row.pop("keywords")
        return row


@dataclass
class StoredArticle(CanonicalArticle):
    id: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredArticle":
        keywords = row.get("keywords")
        return cls(
            id=row["id"],
            identity_hash=row["identity_hash"],
            feed_id=row["feed_id"],
            feed_slug=row["feed_slug"],
            external_id=row["external_id"],
            title=row["title"],
            summary=row["summary"],
            content=row["content"],
            url=row["url"],
            published_at=row["published_at"],
            ingested_at=row["ingested_at"],
            author=row["author"],
            category=row["category"],
            read_time_minutes=row["read_time_minutes"],
            image_url=row.get("image_url"),
            ai_summary=row.get("ai_summary"),
            sentiment=row.get("sentiment"),
            keywords=keywords.split(",") if keywords else None,
        )


@dataclass
class InsertResult:
    inserted: bool
    stored_article: StoredArticle


@dataclass
class EnrichmentJob:
    """Payload handed to the external enrichment worker."""
    article_id: int
    title: str
    content: str
    source_name: str

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CycleError:
    feed_slug: str
    kind: str
    message: str
    item_url: Optional[str] = None


@dataclass
class CycleResult:
    """Aggregate outcome of one ingestion cycle."""
    feeds_processed: int = 0
    feeds_failed: int = 0
    feeds_skipped: int = 0
    articles_ingested: int = 0
    duplicates: int = 0
    jobs_enqueued: int = 0
    errors: List[CycleError] = field(default_factory=list)
    skipped: bool = False
    started_at: Optional[float] = None
    duration_seconds: float = 0.0
