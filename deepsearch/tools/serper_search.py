from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from deepsearch.config import settings

SERPER_SEARCH_URL = "https://google.serper.dev/search"


@dataclass
class SearchResult:
    title: str
    link: str
    snippet: str
    date: str | None = None


async def search(
    query: str,
    *,
    max_results: int = 10,
    http_client: httpx.AsyncClient | None = None,
) -> list[SearchResult]:
    """Execute a Serper (Google) web search and return organic results."""
    if not settings.serper_api_key:
        raise RuntimeError("SERPER_API_KEY is not configured")

    async def _do_request(client: httpx.AsyncClient) -> dict[str, Any]:
        response = await client.post(
            SERPER_SEARCH_URL,
            json={"q": query, "num": max_results},
            headers={
                "X-API-KEY": settings.serper_api_key,
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    if http_client is None:
        async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
            payload = await _do_request(client)
    else:
        payload = await _do_request(http_client)

    return [
        SearchResult(
            title=item.get("title", ""),
            link=item.get("link", ""),
            snippet=item.get("snippet", ""),
            date=item.get("date"),
        )
        for item in payload.get("organic", [])[:max_results]
        if item.get("link")
    ]


def results_to_dicts(results: list[SearchResult]) -> list[dict[str, Any]]:
    """Convert SearchResult list to JSON-serializable dicts."""
    return [
        {"title": r.title, "link": r.link, "snippet": r.snippet, "date": r.date}
        for r in results
    ]
