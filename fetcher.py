#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Fetches one feed URL with a bounded timeout and a descriptive user agent,
parses it with feedparser in a worker thread and converts entries into
RawFeedItem records. The fetcher never retries; retry spacing belongs to the
feed health policy.
"""

from asyncio import TimeoutError, get_running_loop, wait_for
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional
import re

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, ParseError
from records import ParsedFeed, RawFeedItem
from telemetry import trace_span

logger = get_logger("fetcher")

HTTP_OK = 200

DATE_FIELDS = ('published', 'updated', 'created', 'modified', 'date', 'pubDate', 'pubdate', 'issued')


class FeedFetcher:
    def __init__(self, user_agent: Optional[str] = None, timeout_seconds: Optional[int] = None) -> None:
        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="feedparse")
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = ClientTimeout(total=timeout_seconds or config.FETCH_TIMEOUT)
        self.headers = {
            'User-Agent': self.user_agent,
            'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5',
        }

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_url, *a, **k: {"feed.url": feed_url},
    )
    async def fetch(self, feed_url: str, session: Optional[ClientSession] = None) -> ParsedFeed:
        """Fetch and parse one feed.

        Raises:
            FetchError: network failure, timeout or non-200 response.
            ParseError: the payload is not a recognizable RSS/Atom document.
        """
        if session is None:
            async with ClientSession() as own_session:
                content = await self._fetch_feed_content(feed_url, own_session)
        else:
            content = await self._fetch_feed_content(feed_url, session)
        return await self.parse(content, feed_url)

    async def _fetch_feed_content(self, feed_url: str, session: ClientSession) -> bytes:
        try:
            async with session.get(feed_url, headers=self.headers, timeout=self.timeout) as response:
                if response.status != HTTP_OK:
                    raise FetchError(f"HTTP {response.status}", url=feed_url, status=response.status)
                return await response.read()
        except TimeoutError as e:
            raise FetchError(f"Timed out after {self.timeout.total}s", url=feed_url) from e
        except ClientError as e:
            raise FetchError(f"Network error: {self._format_client_error(e)}", url=feed_url) from e

    async def parse(self, content: bytes, feed_url: str = "") -> ParsedFeed:
        """Parse raw feed bytes in the executor and convert entries."""
        feed = await self.run_in_executor(
            lambda c: feedparser.parse(c, sanitize_html=True, resolve_relative_uris=True),
            content,
        )
        version = getattr(feed, 'version', '') or ''
        entries = feed.get('entries') or []
        exc = feed.get('bozo_exception')
        if not entries and not version:
            raise ParseError(f"Not a recognizable RSS/Atom feed: {exc or 'no feed elements'}", url=feed_url)
        if feed.get('bozo'):
            logger.warning(f"Feed parsing warning for {feed_url}: {exc}")

        meta = feed.get('feed') or {}
        items = [self.entry_to_item(entry) for entry in entries]
        logger.debug(f"Parsed {feed_url} as {version or 'unknown'} with {len(items)} entries")
        return ParsedFeed(
            feed_title=meta.get('title', '') or '',
            feed_description=meta.get('subtitle', '') or meta.get('description', '') or '',
            items=items,
        )

    def entry_to_item(self, entry) -> RawFeedItem:
        """Convert a feedparser entry into a RawFeedItem."""
        content = ''
        for content_item in self._get_entry_value(entry, 'content') or []:
            value = content_item.get('value') if hasattr(content_item, 'get') else None
            if value:
                content = value
                break

        author_detail = self._get_entry_value(entry, 'author_detail') or {}
        enclosures = [dict(e) for e in (self._get_entry_value(entry, 'enclosures') or [])]
        # feedparser also exposes image enclosures via links with rel=enclosure
        for link in self._get_entry_value(entry, 'links') or []:
            if link.get('rel') == 'enclosure' and link.get('href') and \
                    not any(e.get('href') == link.get('href') for e in enclosures):
                enclosures.append(dict(link))

        return RawFeedItem(
            title=self._get_entry_value(entry, 'title') or '',
            link=(self._get_entry_value(entry, 'link') or '').strip(),
            content=content,
            description=self._get_entry_value(entry, 'summary') or self._get_entry_value(entry, 'description') or '',
            published=self.parse_date(entry),
            guid=self._get_entry_value(entry, 'id'),
            creator=author_detail.get('name') if hasattr(author_detail, 'get') else None,
            author=self._get_entry_value(entry, 'author'),
            categories=[t.get('term') for t in (self._get_entry_value(entry, 'tags') or []) if t.get('term')],
            enclosures=[{'url': e.get('href') or e.get('url'), 'type': e.get('type', '')} for e in enclosures],
            media_content=[dict(m) for m in (self._get_entry_value(entry, 'media_content') or [])],
            media_thumbnails=[dict(m) for m in (self._get_entry_value(entry, 'media_thumbnail') or [])],
            og_image=self._get_entry_value(entry, 'og_image'),
        )

    def parse_date(self, entry) -> Optional[int]:
        """Return the entry publication time as epoch seconds, or None when absent or malformed."""
        for field in DATE_FIELDS:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp

        # Some CMSes only expose the date inside the guid or permalink
        entry_id = self._get_entry_value(entry, 'id') or self._get_entry_value(entry, 'link')
        if isinstance(entry_id, str):
            for pattern in (r'(\d{4})-(\d{2})-(\d{2})', r'(\d{4})/(\d{2})/(\d{2})'):
                match = re.search(pattern, entry_id)
                if match:
                    try:
                        year, month, day = map(int, match.groups())
                        if 1900 <= year <= 2100:
                            return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                    except ValueError as e:
                        logger.debug(f"Failed to parse date components for '{entry_id}': {e}")
        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            value = getter(field)
            if value is not None:
                return value
        return getattr(entry, field, None)

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None
        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time
            try:
                return timegm(tuple(value)[:9])
            except (OverflowError, ValueError, TypeError):
                return None
        if isinstance(value, str):
            return self._parse_date_string(value.strip())
        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        for parser in (self._parse_with_email_utils, self._parse_iso8601, self._parse_with_custom_formats):
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, OverflowError, IndexError):
            return None
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _parse_iso8601(self, date_str: str) -> Optional[int]:
        try:
            dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        custom_formats = [
            "%d %b %Y %H:%M:%S %z",
            "%d %b %Y %H:%M:%S",
            "%d/%m/%Y %H:%M",
            "%d/%m/%Y",
        ]
        for fmt in custom_formats:
            try:
                dt = datetime.strptime(date_str, fmt)
            except (ValueError, TypeError):
                continue
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        return None

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the parser thread pool."""
        return await get_running_loop().run_in_executor(self.executor, func, *args)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        loop = get_running_loop()
        try:
            await wait_for(loop.run_in_executor(None, lambda: self.executor.shutdown(wait=True)), timeout=30.0)
        except TimeoutError:
            logger.warning("Parser thread pool shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")

    def _format_client_error(self, error: ClientError) -> str:
        """Class name plus status/errno when aiohttp exposes them, then the message."""
        os_error = getattr(error, 'os_error', None)
        details: List[str] = [type(error).__name__]
        details += [f"{label}={value}" for label, value in (
            ('status', getattr(error, 'status', None)),
            ('errno', getattr(os_error, 'errno', None)),
        ) if value is not None]
        details.append(str(error) or str(getattr(os_error, 'strerror', '') or ''))
        return " ".join(part for part in details if part)

