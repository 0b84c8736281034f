from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def canonical_url(url: str) -> str:
    """Normalize a URL for use as a cache key (lowercase host, sorted query, no fragment)."""
    parsed = urlsplit(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def origin(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).netloc
    except ValueError:
        return url


def extract_markdown_links(text: str) -> list[dict[str, str]]:
    """Return unique ``[title](url)`` citations in order of first appearance."""
    sources: list[dict[str, str]] = []
    seen: set[str] = set()
    for title, url in _MARKDOWN_LINK.findall(text or ""):
        url = url.strip()
        if url in seen:
            continue
        seen.add(url)
        sources.append(
            {
                "title": title.strip(),
                "url": url,
                "domain": extract_domain(url) or url,
            }
        )
    return sources
