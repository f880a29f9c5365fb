import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest

from errors import FetchError, ParseError
from fetcher import FeedFetcher


SAMPLE_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:dc="http://purl.org/dc/elements/1.1/">
<channel>
  <title>Gabon Review</title>
  <link>https://www.gabonreview.com</link>
  <description>Actualite du Gabon</description>
  <item>
    <title>Port-Gentil : nouvelle decouverte petroliere</title>
    <link>https://www.gabonreview.com/decouverte-petroliere/</link>
    <guid isPermaLink="false">https://www.gabonreview.com/?p=101</guid>
    <pubDate>Mon, 03 Jun 2024 08:30:00 +0000</pubDate>
    <dc:creator>Jean Mbeng</dc:creator>
    <category>Economie</category>
    <description><![CDATA[<p>Un important gisement a ete annonce.</p>]]></description>
    <content:encoded><![CDATA[<p>Un important gisement a ete annonce au large de Port-Gentil.</p>]]></content:encoded>
    <enclosure url="https://www.gabonreview.com/img/gisement.jpg" type="image/jpeg" length="1234"/>
  </item>
  <item>
    <title>Breve sans date</title>
    <link>https://www.gabonreview.com/breve/</link>
    <description>Texte court.</description>
  </item>
</channel>
</rss>
"""


class FakeResponse:
    def __init__(self, status=200, body=b""):
        self.status = status
        self.body = body

    async def read(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Minimal stand-in for aiohttp.ClientSession.get()."""

    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest.mark.asyncio
async def test_fetch_parses_rss_items():
    fetcher = FeedFetcher(user_agent="TestAgent/1.0", timeout_seconds=3)
    session = FakeSession(FakeResponse(200, SAMPLE_RSS))
    try:
        parsed = await fetcher.fetch("https://www.gabonreview.com/rss", session)
    finally:
        await fetcher.close()

    assert parsed.feed_title == "Gabon Review"
    assert len(parsed.items) == 2

    first = parsed.items[0]
    assert first.link == "https://www.gabonreview.com/decouverte-petroliere/"
    assert first.guid == "https://www.gabonreview.com/?p=101"
    assert first.published == int(datetime(2024, 6, 3, 8, 30, tzinfo=timezone.utc).timestamp())
    assert first.author == "Jean Mbeng"
    assert first.categories == ["Economie"]
    assert "Port-Gentil" in first.content
    assert first.enclosures == [{"url": "https://www.gabonreview.com/img/gisement.jpg", "type": "image/jpeg"}]

    assert parsed.items[1].published is None

    url, kwargs = session.calls[0]
    assert url == "https://www.gabonreview.com/rss"
    assert kwargs["headers"]["User-Agent"] == "TestAgent/1.0"
    assert kwargs["timeout"].total == 3


@pytest.mark.asyncio
async def test_non_200_response_raises_fetch_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("https://example.com/rss", FakeSession(FakeResponse(503)))
    finally:
        await fetcher.close()

    assert excinfo.value.status == 503
    assert excinfo.value.url == "https://example.com/rss"


@pytest.mark.asyncio
async def test_network_error_raises_fetch_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError):
            await fetcher.fetch("https://example.com/rss", FakeSession(exc=aiohttp.ClientConnectionError("refused")))
        with pytest.raises(FetchError, match="Timed out"):
            await fetcher.fetch("https://example.com/rss", FakeSession(exc=asyncio.TimeoutError()))
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_garbage_payload_raises_parse_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(ParseError):
            await fetcher.fetch("https://example.com/rss", FakeSession(FakeResponse(200, b"this is { not a feed")))
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_empty_but_valid_feed_is_not_an_error():
    fetcher = FeedFetcher()
    body = b'<?xml version="1.0"?><rss version="2.0"><channel><title>Vide</title></channel></rss>'
    try:
        parsed = await fetcher.parse(body, "https://example.com/rss")
    finally:
        await fetcher.close()

    assert parsed.feed_title == "Vide"
    assert parsed.items == []
