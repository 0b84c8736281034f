from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Sequence

import httpx
from loguru import logger

from deepsearch.config import settings
from deepsearch.services.env_safety import sanitize_ssl_keylogfile
from deepsearch.tools import content_extractor
from deepsearch.tools.crawl_cache import CrawlCache
from deepsearch.tools.robots import RobotsPolicyCache
from deepsearch.tools.web_utils import is_valid_url


class CrawlErrorReason(StrEnum):
    INVALID_URL = "InvalidUrl"
    ROBOTS_DISALLOWED = "RobotsDisallowed"
    FETCH_FAILED = "FetchFailed"
    EXTRACTION_FAILED = "ExtractionFailed"


class TransientFetchError(Exception):
    """Fetch failure worth retrying (5xx, 429)."""


class PermanentFetchError(Exception):
    """Fetch failure that a retry will not fix (4xx, unsupported content)."""


class FetchError(Exception):
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


@dataclass(slots=True)
class FetchedPage:
    text: str
    final_url: str
    status_code: int = 200
    content_type: str = "text/html"


Fetcher = Callable[[httpx.AsyncClient, str, float], Awaitable[FetchedPage]]

_TEXTUAL_CONTENT_TYPES = ("html", "text", "xml", "json", "markdown")


@dataclass(slots=True)
class CrawlData:
    markdown: str
    title: str | None = None
    links: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"markdown": self.markdown, "title": self.title, "links": list(self.links)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CrawlData":
        return cls(
            markdown=str(payload.get("markdown") or ""),
            title=payload.get("title") or None,
            links=list(payload.get("links") or []),
        )


@dataclass(slots=True)
class CrawlResult:
    url: str
    success: bool
    data: CrawlData | None = None
    error: CrawlErrorReason | None = None
    detail: str | None = None
    attempts: int = 0
    from_cache: bool = False
    timing_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.success and self.data is not None:
            return {"url": self.url, "success": True, "data": self.data.to_dict()}
        return {
            "url": self.url,
            "success": False,
            "error": self.error.value if self.error else CrawlErrorReason.FETCH_FAILED.value,
            "detail": self.detail,
        }


@dataclass(slots=True)
class BulkCrawlResponse:
    success: bool
    results: list[CrawlResult]

    @property
    def failed(self) -> list[CrawlResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
        }
        if not self.success:
            payload["error"] = (
                f"{len(self.failed)} of {len(self.results)} pages could not be crawled"
            )
        return payload


class BulkCrawler:
    """Fetch many URLs concurrently; every URL gets exactly one result.

    Each URL runs its own pipeline (cache → robots → fetch with retry →
    extraction → cache). Failures are returned as data, so one bad URL never
    shrinks or spoils the rest of the batch. Concurrency is bounded by a
    semaphore held only while a request is in flight, never during backoff.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 5,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        max_page_chars: int = 60000,
        user_agent: str = "DeepSearchBot/1.0",
        robots: RobotsPolicyCache | None = None,
        cache: CrawlCache | None = None,
        fetcher: Fetcher | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.max_concurrency = max(int(max_concurrency), 1)
        self.timeout_seconds = max(float(timeout_seconds), 0.01)
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_base_seconds = max(float(backoff_base_seconds), 0.0)
        self.max_page_chars = int(max_page_chars)
        self.user_agent = user_agent
        self.robots = robots
        self.cache = cache
        self._fetcher = fetcher or self._http_fetch
        self._client_factory = client_factory or self._default_client

    @classmethod
    def from_settings(cls) -> "BulkCrawler":
        cache = None
        if settings.crawl_cache_enabled:
            cache = CrawlCache(
                ttl_hours=settings.crawl_cache_ttl_hours,
                persist_dir=settings.crawl_cache_dir or None,
            )
        return cls(
            max_concurrency=settings.crawl_max_concurrency,
            timeout_seconds=settings.crawl_timeout_seconds,
            max_attempts=settings.crawl_max_attempts,
            backoff_base_seconds=settings.crawl_backoff_base_seconds,
            max_page_chars=settings.crawl_max_page_chars,
            user_agent=settings.crawl_user_agent,
            robots=RobotsPolicyCache(
                user_agent=settings.crawl_user_agent,
                ttl_seconds=settings.robots_cache_ttl_seconds,
                unavailable_ttl_seconds=settings.robots_unavailable_ttl_seconds,
            ),
            cache=cache,
        )

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        )

    async def crawl(self, urls: Sequence[str]) -> BulkCrawlResponse:
        url_list = list(urls)
        if not url_list:
            return BulkCrawlResponse(success=True, results=[])

        sanitize_ssl_keylogfile()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        async with self._client_factory() as client:
            results = await asyncio.gather(
                *(self.crawl_one(url, client, semaphore) for url in url_list)
            )

        response = BulkCrawlResponse(
            success=all(r.success for r in results),
            results=list(results),
        )
        logger.info(
            f"Crawled {len(url_list)} URLs: "
            f"{len(url_list) - len(response.failed)} ok, {len(response.failed)} failed"
        )
        return response

    async def crawl_one(
        self,
        url: str,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
    ) -> CrawlResult:
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        target = url.strip()
        if not is_valid_url(target):
            return CrawlResult(
                url=url,
                success=False,
                error=CrawlErrorReason.INVALID_URL,
                detail="Only absolute http(s) URLs can be crawled",
            )

        try:
            if self.cache is not None:
                cached = self.cache.get(target)
                if cached is not None:
                    return CrawlResult(
                        url=url,
                        success=True,
                        data=CrawlData.from_dict(cached),
                        from_cache=True,
                        timing_ms=elapsed(),
                    )

            if self.robots is not None:
                permitted = await self.robots.allowed(target, client, semaphore)
                if not permitted:
                    return CrawlResult(
                        url=url,
                        success=False,
                        error=CrawlErrorReason.ROBOTS_DISALLOWED,
                        detail="robots.txt disallows crawling this URL",
                        timing_ms=elapsed(),
                    )

            try:
                page, attempts = await self._fetch_with_retry(target, client, semaphore)
            except FetchError as exc:
                return CrawlResult(
                    url=url,
                    success=False,
                    error=CrawlErrorReason.FETCH_FAILED,
                    detail=str(exc),
                    attempts=exc.attempts,
                    timing_ms=elapsed(),
                )

            try:
                extracted = await asyncio.to_thread(
                    content_extractor.extract_page,
                    page.final_url or target,
                    page.text,
                    max_chars=self.max_page_chars,
                )
            except Exception as exc:
                return CrawlResult(
                    url=url,
                    success=False,
                    error=CrawlErrorReason.EXTRACTION_FAILED,
                    detail=str(exc),
                    attempts=attempts,
                    timing_ms=elapsed(),
                )

            data = CrawlData(
                markdown=extracted.markdown,
                title=extracted.title or None,
                links=extracted.links,
            )
            if self.cache is not None:
                self.cache.set(target, data.to_dict())
            return CrawlResult(
                url=url,
                success=True,
                data=data,
                attempts=attempts,
                timing_ms=elapsed(),
            )
        except Exception as exc:
            logger.warning(f"Crawl pipeline failed for {url}: {exc}")
            return CrawlResult(
                url=url,
                success=False,
                error=CrawlErrorReason.FETCH_FAILED,
                detail=str(exc),
                timing_ms=elapsed(),
            )

    async def _fetch_with_retry(
        self,
        url: str,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
    ) -> tuple[FetchedPage, int]:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with semaphore:
                    page = await asyncio.wait_for(
                        self._fetcher(client, url, self.timeout_seconds),
                        timeout=self.timeout_seconds,
                    )
                return page, attempt
            except (
                TransientFetchError,
                httpx.TimeoutException,
                httpx.TransportError,
                TimeoutError,
            ) as exc:
                last_error = exc
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_base_seconds * 2 ** (attempt - 1))
            except Exception as exc:
                raise FetchError(f"Fetch failed for {url}: {exc}", attempts=attempt) from exc

        reason = str(last_error) or type(last_error).__name__
        raise FetchError(
            f"Fetch failed for {url} after {self.max_attempts} attempts: {reason}",
            attempts=self.max_attempts,
        )

    async def _http_fetch(
        self,
        client: httpx.AsyncClient,
        url: str,
        timeout: float,
    ) -> FetchedPage:
        response = await client.get(
            url,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
            },
            timeout=timeout,
            follow_redirects=True,
        )
        status = int(response.status_code)
        if status == 429 or status >= 500:
            raise TransientFetchError(f"HTTP {status}")
        if status >= 400:
            raise PermanentFetchError(f"HTTP {status}")

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not any(kind in content_type for kind in _TEXTUAL_CONTENT_TYPES):
            raise PermanentFetchError(f"Unsupported content type: {content_type}")
        return FetchedPage(
            text=response.text,
            final_url=str(response.url),
            status_code=status,
            content_type=content_type,
        )


_crawler: BulkCrawler | None = None


def get_crawler() -> BulkCrawler:
    """Process-wide crawler so the robots and page caches are shared."""
    global _crawler
    if _crawler is None:
        _crawler = BulkCrawler.from_settings()
    return _crawler
