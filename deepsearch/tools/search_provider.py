from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from deepsearch.config import settings
from deepsearch.services.env_safety import sanitize_ssl_keylogfile
from deepsearch.tools import brave_search, serper_search, tavily_search
from deepsearch.tools.serper_search import SearchResult

_PRIMARY_PROVIDERS = {
    "serper": serper_search,
    "brave": brave_search,
}


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def search(query: str, *, limit: int | None = None) -> SearchResponse:
    """Rank web results for ``query`` using the configured provider.

    Cancelling the calling task cancels the in-flight HTTP request.
    """
    sanitize_ssl_keylogfile()
    provider = settings.search_provider.lower().strip()
    max_results = max(1, min(int(limit or settings.search_max_results), 20))
    use_fallback = settings.search_fallback_to_tavily

    if provider == "tavily":
        results = await tavily_search.search(query, max_results=max_results)
        return SearchResponse(results=results, provider="tavily")

    primary = _PRIMARY_PROVIDERS.get(provider)
    if primary is None:
        raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")

    try:
        results = await primary.search(query, max_results=max_results)
    except Exception as e:
        if not use_fallback:
            raise
        fallback_results = await tavily_search.search(query, max_results=max_results)
        return SearchResponse(
            results=fallback_results,
            provider="tavily",
            fallback_from=provider,
            fallback_reason=str(e),
        )

    if results or not use_fallback:
        return SearchResponse(results=results, provider=provider)

    fallback_results = await tavily_search.search(query, max_results=max_results)
    return SearchResponse(
        results=fallback_results,
        provider="tavily",
        fallback_from=provider,
        fallback_reason=f"{provider} returned zero results",
    )


def results_to_dicts(results: list[SearchResult]) -> list[dict[str, Any]]:
    return serper_search.results_to_dicts(results)
