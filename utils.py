#!/usr/bin/env python3
"""
Shared helpers for the ingestion pipeline.

URL checks and resolution, outbound request pacing, retry delays and the
HTML-to-text and HTML-to-Markdown conversions used by normalization.
"""

from asyncio import Lock, sleep
from html import unescape
from time import monotonic
from typing import Optional
import re
import unicodedata
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

_WHITESPACE_RE = re.compile(r"\s+")
_TRACKING_IMG_RE = re.compile(r"(pixel|tracker|counter|spacer|blank|trans)", re.I)
_TINY_IMG_RE = re.compile(r"\.(gif|png)$", re.I)

UNSAFE_TAGS = (
    "script", "style", "noscript", "iframe", "frame", "frameset",
    "object", "embed", "applet", "form", "meta", "base", "link",
)


class RateLimiter:
    """Spaces outbound requests at least 60/rpm seconds apart.

    A non-positive rate disables limiting.
    """

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self._last: Optional[float] = None
        self._lock = Lock()

    async def acquire(self):
        if not self.min_interval:
            return
        async with self._lock:
            if self._last is not None:
                remaining = self.min_interval - (monotonic() - self._last)
                if remaining > 0:
                    logger.debug(f"Pacing page request for {remaining:.2f}s")
                    await sleep(remaining)
            self._last = monotonic()


def validate_url(url: str) -> bool:
    """True for absolute http(s) URLs with a dotted host part."""
    if not isinstance(url, str):
        return False
    candidate = url.strip()
    return bool(candidate) and candidate.startswith(("http://", "https://")) and "." in candidate


def resolve_url(value: Optional[str], base_url: Optional[str] = None) -> Optional[str]:
    """Resolve a possibly relative or protocol-relative URL to an absolute http(s) URL."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.startswith('data:'):
        return None
    if value.startswith('//'):
        value = 'https:' + value
    elif not value.startswith(('http://', 'https://')):
        if not base_url:
            return None
        try:
            value = urljoin(base_url, value)
        except ValueError:
            return None
    return value if validate_url(value) else None


def exponential_delay(base: float, attempt: int, maximum: Optional[float] = None) -> float:
    """Delay for a 1-based attempt number: base * 2**(attempt-1), optionally capped."""
    if attempt <= 0:
        return 0.0
    delay = base * (2 ** (attempt - 1))
    if maximum is not None:
        delay = min(delay, maximum)
    return delay


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. "1h 2m 3s"; zero components are omitted."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut ``text`` so that, suffix included, it fits in ``max_length`` characters."""
    if not text or len(text) <= max_length:
        return text
    if max_length <= len(suffix):
        return text[:max_length]
    return text[:max_length - len(suffix)].rstrip() + suffix


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def html_to_text(html_content: Optional[str]) -> str:
    """Strip tags and entities from an HTML fragment and collapse whitespace."""
    if not html_content:
        return ""
    if '<' not in html_content and '&' not in html_content:
        return collapse_whitespace(html_content)
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return collapse_whitespace(unescape(soup.get_text(" ")))


def strip_accents(text: str) -> str:
    """Lowercase and remove diacritics, e.g. 'Économie' -> 'economie'."""
    decomposed = unicodedata.normalize('NFKD', text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def _is_tracking_image(img) -> bool:
    src = img.get('src', '')
    if _TRACKING_IMG_RE.search(src):
        return True
    return bool(_TINY_IMG_RE.search(src)) and img.get('height') in ('0', '1')


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize article HTML and convert it to Markdown.

    Unsafe elements, inline event handlers, javascript: URLs and tracking
    pixels are removed. Relative links and images are resolved against
    ``base_url``; without one, links become ``#`` and images lose their src.
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(list(UNSAFE_TAGS)):
        tag.decompose()

    for tag in soup.find_all(True):
        for name in list(tag.attrs):
            lowered = name.lower()
            if lowered.startswith('on'):
                del tag[name]
            elif lowered in ('href', 'src') and str(tag[name]).strip().lower().startswith('javascript:'):
                del tag[name]

    for img in soup.find_all('img'):
        if _is_tracking_image(img):
            img.decompose()

    for tag in soup.find_all(['a', 'img']):
        name = 'href' if tag.name == 'a' else 'src'
        value = str(tag.get(name) or '')
        if not value or value.startswith('mailto:'):
            continue
        absolute = resolve_url(value, base_url)
        if absolute:
            tag[name] = absolute
        elif name == 'href':
            tag[name] = '#'
        else:
            del tag[name]

    # wrap_width=0 keeps long URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0).strip()
