#!/usr/bin/env python3
"""
Article image extraction.

Candidates are taken from the feed item first (enclosures, media namespace,
inline HTML, og_image). When none passes validation the article page itself
is fetched and inspected for meta images and content images.
"""

import re
from html import unescape
from typing import Any, Dict, Iterable, List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError
from asyncio import TimeoutError
from bs4 import BeautifulSoup

from config import config, get_logger
from records import RawFeedItem
from utils import RateLimiter, resolve_url

logger = get_logger("images")

LOW_QUALITY_INDICATORS = (
    "avatar", "icon", "logo", "button", "badge", "pixel",
    "spacer", "transparent", "1x1", "tracking",
)
MIN_IMAGE_WIDTH = 200
MIN_IMAGE_HEIGHT = 150
_DIMENSIONS_RE = re.compile(r"(\d+)x(\d+)")

META_IMAGE_KEYS = ("og:image", "og:image:url", "og:image:secure_url")
TWITTER_IMAGE_KEYS = ("twitter:image", "twitter:image:src")

CONTENT_SELECTORS = (
    "article img",
    ".entry-content img",
    ".post-content img",
    ".article-content img",
    ".td-post-content img",
    ".single-post img",
    "main img",
)

_POSITIVE_HINTS = ("featured", "hero", "main", "cover", "wp-post-image")
_NEGATIVE_HINTS = ("logo", "avatar", "icon", "banner", "ad", "ads", "sprite", "gravatar")


def _hint_pattern(hints: Iterable[str]):
    # whole tokens only: "ads" must not fire on "/wp-content/uploads/"
    return re.compile(r"(?<![a-z0-9])(" + "|".join(re.escape(h) for h in hints) + r")(?![a-z0-9])")


_POSITIVE_RE = _hint_pattern(_POSITIVE_HINTS)
_NEGATIVE_RE = _hint_pattern(_NEGATIVE_HINTS)


def is_quality_image(url: Optional[str]) -> bool:
    """Reject tracking pixels, decorations and URLs that advertise tiny dimensions."""
    if not url:
        return False
    lowered = url.lower()
    if any(indicator in lowered for indicator in LOW_QUALITY_INDICATORS):
        return False
    match = _DIMENSIONS_RE.search(lowered)
    if match:
        width, height = int(match.group(1)), int(match.group(2))
        if width < MIN_IMAGE_WIDTH or height < MIN_IMAGE_HEIGHT:
            return False
    return True


def _accept(candidate: Optional[str], base_url: Optional[str]) -> Optional[str]:
    resolved = resolve_url(unescape(candidate) if candidate else candidate, base_url)
    if resolved and is_quality_image(resolved):
        return resolved
    return None


def _img_source(img) -> str:
    return (
        img.get("src")
        or img.get("data-src")
        or img.get("data-lazy-src")
        or img.get("data-original")
        or ""
    )


def first_html_image(html: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """Return the first <img> in an HTML fragment that passes the quality filter."""
    if not html or "<img" not in html.lower():
        return None
    soup = BeautifulSoup(html, "html.parser")
    for img in soup.find_all("img"):
        accepted = _accept(_img_source(img), base_url)
        if accepted:
            return accepted
    return None


def _is_image_attachment(entry: Dict[str, Any]) -> bool:
    mime = (entry.get("type") or "").lower()
    medium = (entry.get("medium") or "").lower()
    if mime:
        return mime.startswith("image/")
    if medium:
        return medium == "image"
    # untyped media entries are assumed to be images
    return True


def _first_attachment(entries: Iterable[Dict[str, Any]], base_url: Optional[str],
                      require_type: bool = False) -> Optional[str]:
    for entry in entries or []:
        if require_type:
            if not (entry.get("type") or "").lower().startswith("image/"):
                continue
        elif not _is_image_attachment(entry):
            continue
        accepted = _accept(entry.get("url") or entry.get("href"), base_url)
        if accepted:
            return accepted
    return None


def extract_item_image(item: RawFeedItem) -> Optional[str]:
    """Pick the best image carried by the feed item itself, or None.

    Priority: image enclosure, media:content, media:thumbnail, first content
    image, first description image, og_image field.
    """
    base_url = item.link or None
    steps = (
        lambda: _first_attachment(item.enclosures, base_url, require_type=True),
        lambda: _first_attachment(item.media_content, base_url),
        lambda: _first_attachment(item.media_thumbnails, base_url),
        lambda: first_html_image(item.content, base_url),
        lambda: first_html_image(item.description, base_url),
        lambda: _accept(item.og_image, base_url),
    )
    for step in steps:
        try:
            found = step()
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Image candidate step failed for {item.link}: {e}")
            continue
        if found:
            return found
    return None


def _meta_image(soup: BeautifulSoup, keys: Iterable[str], base_url: str) -> Optional[str]:
    wanted = tuple(keys)
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip().lower()
        if key in wanted:
            accepted = _accept((meta.get("content") or "").strip(), base_url)
            if accepted:
                return accepted
    return None


def _score_image(img, url: str) -> float:
    score = 0.0
    try:
        width = int(img.get("width") or 0)
        height = int(img.get("height") or 0)
        score += min(width * height, 2_000_000) / 10_000.0
    except (TypeError, ValueError):
        pass
    classes = img.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    hints = " ".join([url.lower(), " ".join(classes).lower(), (img.get("alt") or "").lower(),
                      (img.get("id") or "").lower()])
    score += 25.0 * len(set(_POSITIVE_RE.findall(hints)))
    score -= 40.0 * len(set(_NEGATIVE_RE.findall(hints)))
    if img.get("srcset"):
        score += 10.0
    return score


def extract_page_image(html: str, base_url: str) -> Optional[str]:
    """Find the representative image of an article page.

    Order: Open Graph meta, Twitter Card meta, content-area selectors, then the
    highest-scored image on the page.
    """
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")

    found = _meta_image(soup, META_IMAGE_KEYS, base_url)
    if found:
        return found
    found = _meta_image(soup, TWITTER_IMAGE_KEYS, base_url)
    if found:
        return found

    for selector in CONTENT_SELECTORS:
        for img in soup.select(selector):
            accepted = _accept(_img_source(img), base_url)
            if accepted:
                return accepted

    best_url = None
    best_score = 0.0
    for img in soup.find_all("img", limit=50):
        accepted = _accept(_img_source(img), base_url)
        if not accepted:
            continue
        score = _score_image(img, accepted)
        if best_url is None or score > best_score:
            best_url, best_score = accepted, score
    return best_url


class PageImageScraper:
    """Fetches article pages to recover an image when the feed carried none."""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.rate_limiter = rate_limiter or RateLimiter(config.SCRAPE_REQUESTS_PER_MINUTE)
        self.timeout = ClientTimeout(total=config.IMAGE_SCRAPE_TIMEOUT)
        self.headers = {
            "User-Agent": config.SCRAPER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml",
            "Accept-Language": "fr-FR,fr;q=0.9,en;q=0.8",
        }

    async def fetch_image(self, article_url: str, session: ClientSession) -> Optional[str]:
        """Return an image URL from the article page, or None on any failure."""
        if not resolve_url(article_url):
            return None
        await self.rate_limiter.acquire()
        try:
            async with session.get(article_url, headers=self.headers, timeout=self.timeout) as response:
                if response.status != 200:
                    logger.debug(f"Image scrape of {article_url} returned HTTP {response.status}")
                    return None
                html = await response.text(errors="replace")
        except (ClientError, TimeoutError) as e:
            logger.debug(f"Image scrape of {article_url} failed: {e}")
            return None
        return extract_page_image(html, str(article_url))


__all__: List[str] = [
    "is_quality_image",
    "first_html_image",
    "extract_item_image",
    "extract_page_image",
    "PageImageScraper",
]
