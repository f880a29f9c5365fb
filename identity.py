#!/usr/bin/env python3
"""
Article identity for deduplication.

Every dedup check in the pipeline uses compute_identity(); there is no second
hashing scheme. The source identifier is the feed slug so that hashes stay
stable across databases and restarts.
"""

from hashlib import sha256
from urllib.parse import urlsplit, urlunsplit

TRACKING_PARAM_PREFIXES = ("utm_",)
TRACKING_PARAM_NAMES = {
    "fbclid",
    "gclid",
    "dclid",
    "yclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "ref_src",
    "xtor",
}


def compute_identity(title: str, url: str, source_id: str = "") -> str:
    """Return the SHA-256 hex digest of ``title|url|source_id``.

    Pure and total: empty strings are valid input.
    """
    key = f"{title or ''}|{url or ''}|{source_id or ''}"
    return sha256(key.encode("utf-8")).hexdigest()


def canonicalize_url(url: str) -> str:
    """Normalize an article URL before hashing.

    Lowercases scheme and host, drops the fragment and well-known tracking
    query parameters. Path and remaining query order are preserved.
    """
    if not url:
        return ""
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url

    kept = []
    for pair in parts.query.split("&"):
        if not pair:
            continue
        key = pair.split("=", 1)[0].lower()
        if key.startswith(TRACKING_PARAM_PREFIXES) or key in TRACKING_PARAM_NAMES:
            continue
        kept.append(pair)

    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path or "/",
        "&".join(kept),
        "",
    ))
