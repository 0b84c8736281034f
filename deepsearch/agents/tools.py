"""Closed registry of the tools the turn loop may call."""
from __future__ import annotations

from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from deepsearch.llm_client import ToolCallRequest
from deepsearch.tools import search_provider
from deepsearch.tools.crawler import BulkCrawler, get_crawler

SEARCH_WEB = "search_web"
SCRAPE_PAGES = "scrape_pages"


class SearchWebArgs(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=20)


class ScrapePagesArgs(BaseModel):
    urls: list[str] = Field(min_length=1, max_length=10)

    @field_validator("urls")
    @classmethod
    def _strip_urls(cls, urls: list[str]) -> list[str]:
        return [u.strip() for u in urls if u and u.strip()]


TOOL_SPECS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": SEARCH_WEB,
            "description": (
                "Search the web for up-to-date information. Returns titles, links, "
                "snippets and publication dates when available."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query. Be specific and targeted.",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Number of results to return (1-20).",
                        "default": 10,
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": SCRAPE_PAGES,
            "description": (
                "Fetch the full content of web pages as clean markdown. Checks "
                "robots.txt, retries transient failures and caches results. Some "
                "pages may fail; use whatever succeeded."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "urls": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Absolute http(s) URLs to fetch.",
                    },
                },
                "required": ["urls"],
            },
        },
    },
]


SearchFn = Callable[..., Awaitable[search_provider.SearchResponse]]


class ToolRegistry:
    """Validates tool arguments and dispatches to the search and crawl backends.

    Failures never escape ``execute``: they come back as ``{"error": ...}``
    results that the model can read and react to.
    """

    def __init__(
        self,
        search: SearchFn | None = None,
        crawler: BulkCrawler | None = None,
    ):
        self._search = search or search_provider.search
        self._crawler = crawler

    @property
    def crawler(self) -> BulkCrawler:
        if self._crawler is None:
            self._crawler = get_crawler()
        return self._crawler

    def specs(self) -> list[dict[str, Any]]:
        return TOOL_SPECS

    async def execute(self, call: ToolCallRequest) -> dict[str, Any]:
        try:
            if call.name == SEARCH_WEB:
                args = SearchWebArgs.model_validate(call.arguments)
                return await self._search_web(args)
            elif call.name == SCRAPE_PAGES:
                args = ScrapePagesArgs.model_validate(call.arguments)
                return await self._scrape_pages(args)
            return {"error": f"Unknown tool: {call.name}"}
        except ValidationError as e:
            return {"error": f"Invalid arguments for {call.name}: {e.errors(include_url=False)}"}
        except Exception as e:
            logger.warning(f"Tool {call.name} failed: {e}")
            return {"error": f"{call.name} failed: {e}"}

    async def _search_web(self, args: SearchWebArgs) -> dict[str, Any]:
        response = await self._search(args.query, limit=args.limit)
        payload: dict[str, Any] = {
            "query": args.query,
            "provider": response.provider,
            "results": search_provider.results_to_dicts(response.results),
        }
        if response.fallback_from:
            payload["fallbackFrom"] = response.fallback_from
        return payload

    async def _scrape_pages(self, args: ScrapePagesArgs) -> dict[str, Any]:
        if not args.urls:
            return {"error": "No URLs supplied"}
        response = await self.crawler.crawl(args.urls)
        return response.to_dict()
