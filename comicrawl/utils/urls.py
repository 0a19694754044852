"""
URL helpers shared by extractors, duplicate detection and handlers.
"""

import re
from urllib.parse import urljoin, urlparse

from slugify import slugify

_GALLERY_PATTERN = re.compile(r"/g/(\d+)")
_COMIC_PATH_PATTERN = re.compile(r"/truyen-tranh/([^/]+?)(?:/chapter|/chap|/chuong|/?$)")
_IGNORED_SEGMENTS = {"truyen", "truyen-tranh", "g", "manga", "comic", "comics"}


def normalize_url(url: str | None) -> str:
    """
    Canonical form used for exact-URL comparisons.

    Lowercases, drops the scheme, a leading ``www.``, the query string,
    the fragment and any trailing slash.

    Example:
        >>> normalize_url("https://www.Example.com/truyen-tranh/abc/?page=2")
        'example.com/truyen-tranh/abc'
    """
    if not url:
        return ""
    value = url.strip().lower()
    value = re.sub(r"^[a-z][a-z0-9+.-]*://", "", value)
    if value.startswith("www."):
        value = value[4:]
    value = value.split("#", 1)[0].split("?", 1)[0]
    return value.rstrip("/")


def domain_of(url: str) -> str:
    """Host part of ``url`` without ``www.``, lowercased."""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def origin_of(url: str) -> str:
    """Scheme and host of ``url`` (``https://example.com``)."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


def gallery_id(url: str) -> str | None:
    """Numeric gallery id from ``/g/<id>`` URLs, or None."""
    match = _GALLERY_PATTERN.search(url or "")
    return match.group(1) if match else None


def extract_slug(url: str | None) -> str:
    """
    Stable comic identifier derived from a URL.

    Gallery URLs map to ``gallery-<id>``, ``/truyen-tranh/<slug>`` URLs to
    their slug, anything else to the last meaningful path segment.
    """
    if not url:
        return ""

    gid = gallery_id(url)
    if gid:
        return f"gallery-{gid}"

    match = _COMIC_PATH_PATTERN.search(url)
    if match:
        return match.group(1).lower()

    path = urlparse(url).path or ""
    for segment in reversed([s for s in path.split("/") if s]):
        if segment.lower() not in _IGNORED_SEGMENTS:
            return slugify(segment)
    return ""


def absolutize(base_url: str, href: str | None) -> str | None:
    """Resolve ``href`` against ``base_url``; None for empty, data: and javascript: links."""
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(("data:", "javascript:", "#")):
        return None
    if href.startswith("//"):
        scheme = urlparse(base_url).scheme or "https"
        return f"{scheme}:{href}"
    return urljoin(base_url, href)
