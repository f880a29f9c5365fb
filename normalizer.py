#!/usr/bin/env python3
"""
Content normalization for raw feed items.

Turns a RawFeedItem into NormalizedContent: cleaned title and summary,
sanitized Markdown content, a representative image, a resolved author, a
category from the French news vocabulary and a read-time estimate.

Normalization never fails. Each extraction step that raises is logged at
debug level and treated as "no value found".
"""

import re
from math import ceil
from typing import Any, Callable, Dict, List, Optional

from aiohttp import ClientSession
from bs4 import BeautifulSoup

from config import config, get_logger
from images import PageImageScraper, extract_item_image
from records import Feed, NormalizedContent, RawFeedItem
from telemetry import trace_span
from utils import clean_html_to_markdown, collapse_whitespace, html_to_text, strip_accents, truncate_string

logger = get_logger("normalizer")

WORDS_PER_MINUTE = 200
MIN_READ_TIME = 1
MAX_READ_TIME = 30
CATEGORY_MIN_HITS = 2
DEFAULT_CATEGORY = "general"

# Name words must start with an uppercase letter; role prefixes are matched case-insensitively.
_NAME = r"([A-ZÀ-ÖØ-Þ][\w'’.\-]*(?:[ \t]+[A-ZÀ-ÖØ-Þ][\w'’.\-]*){0,3})"
AUTHOR_PATTERNS = [
    re.compile(r"\b(?i:par|by)\s*:?\s+" + _NAME),
    re.compile(r"\b(?i:auteur|journaliste|r[ée]dacteur)\s*:\s*" + _NAME),
]
TITLE_AUTHOR_PATTERN = re.compile(r"\|\s*" + _NAME + r"\s*$")
_ROLE_PREFIX_RE = re.compile(r"^(?:par|by|auteur|journaliste|r[ée]dacteur)\s*:?\s+", re.IGNORECASE)
_EMAIL_NAME_RE = re.compile(r"^\S+@\S+\s*\((.+)\)$")
_EMAIL_RE = re.compile(r"^\S+@\S+$")
_AUTHOR_JUNK_RE = re.compile(r"[^\w\s\-.'’]")


def clean_author_name(raw: Optional[str]) -> Optional[str]:
    """Strip role prefixes and punctuation, then title-case each word.

    Returns None when nothing usable remains.
    """
    if not raw:
        return None
    name = collapse_whitespace(raw)
    email_match = _EMAIL_NAME_RE.match(name)
    if email_match:
        name = email_match.group(1)
    elif _EMAIL_RE.match(name):
        return None
    name = _ROLE_PREFIX_RE.sub("", name)
    name = collapse_whitespace(_AUTHOR_JUNK_RE.sub("", name)).strip(" -.")
    if not name:
        return None
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split(" "))


def text_lines(html: Optional[str]) -> List[str]:
    """Plain-text lines of an HTML fragment, one per block element."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    return [line for line in (collapse_whitespace(part) for part in soup.get_text("\n").split("\n")) if line]


def estimate_read_time(text: str) -> int:
    words = len(text.split()) if text else 0
    return max(MIN_READ_TIME, min(MAX_READ_TIME, ceil(words / WORDS_PER_MINUTE)))


class ContentNormalizer:
    """Normalizes raw feed items into persistable content fields."""

    def __init__(self, image_scraper: Optional[PageImageScraper] = None,
                 category_keywords: Optional[Dict[str, List[str]]] = None,
                 default_author: Optional[str] = None,
                 summary_max_length: Optional[int] = None,
                 scrape_images: Optional[bool] = None):
        self.scrape_images = config.IMAGE_SCRAPE_ENABLED if scrape_images is None else scrape_images
        self.image_scraper = image_scraper
        if self.scrape_images and self.image_scraper is None:
            self.image_scraper = PageImageScraper()
        self.default_author = default_author or config.DEFAULT_AUTHOR
        self.summary_max_length = summary_max_length or config.SUMMARY_MAX_LENGTH
        self.category_keywords = category_keywords or config.CATEGORY_KEYWORDS
        self._keyword_patterns = {
            category: [re.compile(r"\b" + re.escape(strip_accents(kw)) + r"(?:s|x)?\b") for kw in keywords]
            for category, keywords in self.category_keywords.items()
        }

    def _safe(self, step: str, func: Callable[[], Any], default: Any = None) -> Any:
        try:
            value = func()
        except Exception as e:
            logger.debug(f"Normalization step '{step}' failed: {e}")
            return default
        return default if value is None else value

    # ------------------------------------------------------------------
    # Individual extraction steps
    # ------------------------------------------------------------------
    def clean_title(self, item: RawFeedItem) -> str:
        return html_to_text(item.title) or config.DEFAULT_TITLE

    def build_summary(self, item: RawFeedItem) -> str:
        text = html_to_text(item.description) or html_to_text(item.content)
        return truncate_string(text, self.summary_max_length)

    def build_content(self, item: RawFeedItem) -> str:
        html = item.content or item.description
        if not html:
            return ""
        return clean_html_to_markdown(html, base_url=item.link or None)

    def resolve_author(self, item: RawFeedItem, feed: Optional[Feed] = None) -> str:
        """Explicit fields, then byline patterns in the body, then a title suffix, then fallbacks."""
        for explicit in (item.creator, item.author):
            name = self._safe("author.explicit", lambda: clean_author_name(explicit))
            if name:
                return name

        def _from_content() -> Optional[str]:
            # bylines never span paragraphs, so search block by block
            lines = text_lines(item.content or item.description)
            for pattern in AUTHOR_PATTERNS:
                for line in lines:
                    match = pattern.search(line)
                    if match:
                        return clean_author_name(match.group(1))
            return None

        name = self._safe("author.content", _from_content)
        if name:
            return name

        def _from_title() -> Optional[str]:
            match = TITLE_AUTHOR_PATTERN.search(html_to_text(item.title))
            return clean_author_name(match.group(1)) if match else None

        name = self._safe("author.title", _from_title)
        if name:
            return name

        if feed is not None and feed.author_fallback:
            return feed.author_fallback
        return self.default_author

    def assign_category(self, item: RawFeedItem, text: str) -> str:
        vocabulary = list(self.category_keywords)
        for label in item.categories or []:
            key = strip_accents(collapse_whitespace(label))
            if key in vocabulary:
                return key
            if key.endswith("s") and key[:-1] in vocabulary:
                return key[:-1]

        haystack = strip_accents(f"{html_to_text(item.title)} {text}")
        best_category, best_hits = DEFAULT_CATEGORY, 0
        for category in vocabulary:
            hits = sum(len(pattern.findall(haystack)) for pattern in self._keyword_patterns[category])
            if hits > best_hits:
                best_category, best_hits = category, hits
        return best_category if best_hits >= CATEGORY_MIN_HITS else DEFAULT_CATEGORY

    async def resolve_image(self, item: RawFeedItem, session: Optional[ClientSession] = None) -> Optional[str]:
        image = self._safe("image.item", lambda: extract_item_image(item))
        if image:
            return image
        if not (self.scrape_images and self.image_scraper and session and item.link):
            return None
        try:
            return await self.image_scraper.fetch_image(item.link, session)
        except Exception as e:
            logger.debug(f"Normalization step 'image.page' failed for {item.link}: {e}")
            return None

    # ------------------------------------------------------------------
    @trace_span(
        "normalize.item",
        tracer_name="normalizer",
        attr_from_args=lambda self, item, *a, **k: {"article.url": item.link},
    )
    async def normalize(self, item: RawFeedItem, feed: Optional[Feed] = None,
                        session: Optional[ClientSession] = None) -> NormalizedContent:
        """Normalize one raw item. Never raises."""
        title = self._safe("title", lambda: self.clean_title(item), config.DEFAULT_TITLE)
        summary = self._safe("summary", lambda: self.build_summary(item), "")
        content = self._safe("content", lambda: self.build_content(item), "")
        plain_text = self._safe("text", lambda: html_to_text(item.content or item.description), "")
        author = self._safe("author", lambda: self.resolve_author(item, feed), self.default_author)
        category = self._safe("category", lambda: self.assign_category(item, plain_text), DEFAULT_CATEGORY)
        read_time = self._safe("read_time", lambda: estimate_read_time(plain_text), MIN_READ_TIME)
        image_url = await self.resolve_image(item, session)

        return NormalizedContent(
            title=title,
            summary=summary,
            content=content,
            image_url=image_url,
            author=author,
            category=category,
            read_time_minutes=read_time,
        )
