from __future__ import annotations

from typing import Any

from tavily import AsyncTavilyClient

from deepsearch.config import settings
from deepsearch.tools.serper_search import SearchResult


async def search(
    query: str,
    *,
    max_results: int = 10,
    search_depth: str = "basic",
) -> list[SearchResult]:
    """Execute a Tavily web search and return structured results."""
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "topic": "general",
    }
    response = await client.search(**kwargs)

    return [
        SearchResult(
            title=r.get("title", ""),
            link=r.get("url", ""),
            snippet=r.get("content", ""),
            date=r.get("published_date"),
        )
        for r in response.get("results", [])
    ]
