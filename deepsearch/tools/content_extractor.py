from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urldefrag

from bs4 import BeautifulSoup, NavigableString, Tag

BOILERPLATE_TAGS = (
    "script",
    "style",
    "noscript",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "iframe",
    "svg",
    "button",
)

NAV_MARKERS = (
    "main menu",
    "navigation",
    "skip to",
    "cookie",
    "subscribe",
    "sign in",
)

_BLOCK_TAGS = {"p", "div", "section", "article", "main", "blockquote", "pre", "table", "tr"}


@dataclass
class ExtractedPage:
    url: str
    title: str
    markdown: str
    links: list[str] = field(default_factory=list)
    method: str = "trafilatura"


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def _looks_like_html(raw: str) -> bool:
    head = raw[:2000].lower()
    return "<html" in head or "<body" in head or "<!doctype html" in head or "<div" in head


def _looks_low_quality(text: str) -> bool:
    lowered = text.lower()
    marker_hits = sum(lowered.count(marker) for marker in NAV_MARKERS)
    if len(text) < 200:
        return True
    if marker_hits >= 4 and len(text) < 2500:
        return True
    return False


def _extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string:
        return _normalize_text(soup.title.string)
    heading = soup.find("h1")
    if heading:
        return _normalize_text(heading.get_text(" "))
    return ""


def _extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        absolute, _ = urldefrag(urljoin(base_url, href))
        if not absolute.startswith(("http://", "https://")) or absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links


def _extract_with_trafilatura(raw_html: str, url: str) -> str:
    import trafilatura

    extracted = trafilatura.extract(
        raw_html,
        url=url,
        output_format="markdown",
        include_links=True,
        include_formatting=True,
        include_tables=True,
        include_comments=False,
    )
    if not isinstance(extracted, str):
        return ""
    return _normalize_text(extracted)


def _inline_markdown(node: Tag | NavigableString, base_url: str) -> str:
    if isinstance(node, NavigableString):
        return str(node)
    if node.name == "a" and node.get("href"):
        label = " ".join(node.get_text(" ").split())
        href = urljoin(base_url, str(node["href"]))
        return f"[{label}]({href})" if label else ""
    if node.name in ("strong", "b"):
        inner = "".join(_inline_markdown(child, base_url) for child in node.children).strip()
        return f"**{inner}**" if inner else ""
    if node.name in ("em", "i"):
        inner = "".join(_inline_markdown(child, base_url) for child in node.children).strip()
        return f"*{inner}*" if inner else ""
    if node.name == "code":
        return f"`{node.get_text()}`"
    if node.name == "br":
        return "\n"
    return "".join(_inline_markdown(child, base_url) for child in node.children)


def _block_markdown(node: Tag, base_url: str, out: list[str]) -> None:
    for child in node.children:
        if isinstance(child, NavigableString):
            text = str(child).strip()
            if text:
                out.append(text)
            continue
        if not isinstance(child, Tag):
            continue

        name = child.name
        if name and re.fullmatch(r"h[1-6]", name):
            text = " ".join(_inline_markdown(child, base_url).split())
            if text:
                out.append(f"{'#' * int(name[1])} {text}")
        elif name in ("ul", "ol"):
            for index, item in enumerate(child.find_all("li", recursive=False), 1):
                marker = f"{index}." if name == "ol" else "-"
                text = " ".join(_inline_markdown(item, base_url).split())
                if text:
                    out.append(f"{marker} {text}")
        elif name == "pre":
            out.append(f"```\n{child.get_text()}\n```")
        elif name == "p":
            text = " ".join(_inline_markdown(child, base_url).split())
            if text:
                out.append(text)
        elif name in _BLOCK_TAGS or child.find(["p", "h1", "h2", "h3", "ul", "ol"]):
            _block_markdown(child, base_url, out)
        else:
            text = " ".join(_inline_markdown(child, base_url).split())
            if text:
                out.append(text)


def _extract_with_soup(soup: BeautifulSoup, base_url: str) -> str:
    for tag in soup.find_all(list(BOILERPLATE_TAGS)):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    blocks: list[str] = []
    _block_markdown(root, base_url, blocks)
    return _normalize_text("\n\n".join(blocks))


def extract_page(url: str, raw_content: str, *, max_chars: int = 60000) -> ExtractedPage:
    """Turn a fetched page into markdown, keeping headings and links.

    Raises ``ValueError`` when nothing readable is left after extraction.
    """
    if not raw_content or not raw_content.strip():
        raise ValueError(f"Empty document for {url}")

    if not _looks_like_html(raw_content):
        text = _truncate(_normalize_text(raw_content), max_chars)
        return ExtractedPage(url=url, title="", markdown=text, links=[], method="raw")

    soup = BeautifulSoup(raw_content, "html.parser")
    title = _extract_title(soup)
    links = _extract_links(soup, url)

    primary = _extract_with_trafilatura(raw_content, url)
    if primary and not _looks_low_quality(primary):
        return ExtractedPage(
            url=url,
            title=title,
            markdown=_truncate(primary, max_chars),
            links=links,
            method="trafilatura",
        )

    fallback = _extract_with_soup(soup, url)
    best = fallback if len(fallback) >= len(primary) else primary
    if not best:
        raise ValueError(f"No readable content extracted from {url}")
    return ExtractedPage(
        url=url,
        title=title,
        markdown=_truncate(best, max_chars),
        links=links,
        method="soup" if best is fallback else "trafilatura",
    )
