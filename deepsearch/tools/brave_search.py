from __future__ import annotations

from typing import Any

import httpx

from deepsearch.config import settings
from deepsearch.tools.serper_search import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


async def search(
    query: str,
    *,
    max_results: int = 10,
) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": max_results,
    }

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    mapped: list[SearchResult] = []
    for item in payload.get("web", {}).get("results", []):
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        mapped.append(
            SearchResult(
                title=item.get("title", ""),
                link=item.get("url", ""),
                snippet=description.strip() or " ".join(snippets).strip(),
                # Brave reports either a relative age ("2 days ago") or a page date.
                date=item.get("page_age") or item.get("age"),
            )
        )
    return mapped
