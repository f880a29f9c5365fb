import time
from datetime import datetime, timezone

from fetcher import FeedFetcher


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:  # pragma: no cover - mirrors feedparser behavior
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://example.com/article/post",
    )

    timestamp = fetcher.parse_date(entry)

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parse_rfc822_date_with_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(pubDate="Sat, 15 Nov 2025 16:00:00 +0100")

    timestamp = fetcher.parse_date(entry)

    expected = int(datetime(2025, 11, 15, 15, 0, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parsed_struct_time_is_treated_as_utc():
    fetcher = FeedFetcher()
    entry = DummyEntry(published_parsed=time.struct_time((2024, 6, 3, 8, 30, 0, 0, 155, 0)))

    expected = int(datetime(2024, 6, 3, 8, 30, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date(entry) == expected


def test_iso8601_updated_field():
    fetcher = FeedFetcher()
    entry = DummyEntry(updated="2024-06-03T10:15:00Z")

    expected = int(datetime(2024, 6, 3, 10, 15, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date(entry) == expected


def test_date_recovered_from_permalink():
    fetcher = FeedFetcher()
    entry = DummyEntry(link="https://www.gabonreview.com/2024/06/03/budget-rectificatif/")

    expected = int(datetime(2024, 6, 3, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_date(entry) == expected


def test_missing_or_malformed_date_returns_none():
    fetcher = FeedFetcher()

    assert fetcher.parse_date(DummyEntry(title="Sans date", link="https://example.com/a")) is None
    assert fetcher.parse_date(DummyEntry(pubDate="hier soir", link="https://example.com/a")) is None
