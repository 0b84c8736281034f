from __future__ import annotations

import asyncio
from collections import Counter

import httpx
import pytest

from deepsearch.tools.crawl_cache import CrawlCache
from deepsearch.tools.crawler import BulkCrawler, CrawlErrorReason, FetchedPage, TransientFetchError
from deepsearch.tools.robots import RobotsPolicyCache

PAGE = """
<html>
  <head><title>Example Page</title></head>
  <body>
    <nav><a href="/home">Home</a> | <a href="/about">About</a></nav>
    <main>
      <h1>Weather in Paris</h1>
      <p>Paris is sunny today with a high of 21 degrees and a light breeze from the west.</p>
      <p>Forecasters expect the warm spell to continue through the weekend, according to
      <a href="https://meteo.example/paris">the national weather service</a>.</p>
      <p>Evenings stay mild, so outdoor plans along the Seine should be unaffected.</p>
    </main>
    <footer>Copyright 2026</footer>
  </body>
</html>
"""


class Site:
    """MockTransport handler with per-path responses and a hit counter."""

    def __init__(self, robots: str | None = None):
        self.robots = robots
        self.hits: Counter[str] = Counter()
        self.statuses: dict[str, list[int]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = f"{request.url.host}{request.url.path}"
        self.hits[key] += 1
        if request.url.path == "/robots.txt":
            if self.robots is None:
                return httpx.Response(404)
            return httpx.Response(200, text=self.robots)

        script = self.statuses.get(key)
        status = script.pop(0) if script else 200
        if status != 200:
            return httpx.Response(status)
        if request.url.path.endswith("/empty"):
            return httpx.Response(200, html="")
        return httpx.Response(200, html=PAGE)


def make_crawler(site: Site, **kwargs) -> BulkCrawler:
    options = {
        "max_concurrency": 3,
        "timeout_seconds": 1.0,
        "max_attempts": 3,
        "backoff_base_seconds": 0,
        "user_agent": "TestBot/1.0",
        "robots": RobotsPolicyCache(user_agent="TestBot/1.0"),
        "cache": CrawlCache(ttl_hours=1),
        "client_factory": lambda: httpx.AsyncClient(transport=httpx.MockTransport(site)),
    }
    options.update(kwargs)
    return BulkCrawler(**options)


@pytest.mark.asyncio
async def test_one_result_per_url_in_input_order():
    site = Site()
    site.statuses["b.test/missing"] = [404]
    crawler = make_crawler(site)
    urls = ["https://a.test/ok", "not a url", "https://b.test/missing", "https://c.test/ok"]

    response = await crawler.crawl(urls)

    assert [r.url for r in response.results] == urls
    assert response.success is False
    ok, invalid, missing, other = response.results
    assert ok.success and other.success
    assert invalid.error == CrawlErrorReason.INVALID_URL
    assert missing.error == CrawlErrorReason.FETCH_FAILED


@pytest.mark.asyncio
async def test_all_successful_batch_reports_success():
    crawler = make_crawler(Site())
    response = await crawler.crawl(["https://a.test/one", "https://a.test/two"])

    assert response.success is True
    first = response.results[0].data
    assert first.title == "Example Page"
    assert "sunny" in first.markdown
    assert "https://meteo.example/paris" in first.links


@pytest.mark.asyncio
async def test_empty_batch():
    response = await make_crawler(Site()).crawl([])
    assert response.success is True
    assert response.results == []


@pytest.mark.asyncio
async def test_robots_disallow_short_circuits_fetch():
    site = Site(robots="User-agent: *\nDisallow: /private\n")
    crawler = make_crawler(site)

    response = await crawler.crawl(["https://a.test/private/page"])

    result = response.results[0]
    assert result.error == CrawlErrorReason.ROBOTS_DISALLOWED
    assert site.hits["a.test/private/page"] == 0


@pytest.mark.asyncio
async def test_robots_policy_is_cached_per_origin():
    site = Site(robots="User-agent: *\nDisallow: /private\n")
    crawler = make_crawler(site)

    await crawler.crawl(["https://a.test/one"])
    await crawler.crawl(["https://a.test/two"])

    assert site.hits["a.test/robots.txt"] == 1


@pytest.mark.asyncio
async def test_robots_fetched_once_for_concurrent_urls_on_one_origin():
    hits: Counter[str] = Counter()

    async def handler(request: httpx.Request) -> httpx.Response:
        hits[request.url.path] += 1
        await asyncio.sleep(0.02)
        if request.url.path == "/robots.txt":
            return httpx.Response(200, text="User-agent: *\nDisallow: /private\n")
        return httpx.Response(200, html=PAGE)

    crawler = make_crawler(
        Site(),
        max_concurrency=5,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    response = await crawler.crawl([f"https://a.test/p{i}" for i in range(5)])

    assert response.success is True
    assert hits["/robots.txt"] == 1



@pytest.mark.asyncio
async def test_retries_transient_status_then_succeeds():
    site = Site()
    site.statuses["a.test/flaky"] = [503, 429]
    crawler = make_crawler(site)

    result = (await crawler.crawl(["https://a.test/flaky"])).results[0]

    assert result.success is True
    assert result.attempts == 3
    assert site.hits["a.test/flaky"] == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    site = Site()
    site.statuses["a.test/down"] = [500, 502, 503, 504]
    crawler = make_crawler(site, max_attempts=3)

    result = (await crawler.crawl(["https://a.test/down"])).results[0]

    assert result.error == CrawlErrorReason.FETCH_FAILED
    assert result.attempts == 3
    assert site.hits["a.test/down"] == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    site = Site()
    site.statuses["a.test/gone"] = [404]
    crawler = make_crawler(site)

    result = (await crawler.crawl(["https://a.test/gone"])).results[0]

    assert result.error == CrawlErrorReason.FETCH_FAILED
    assert result.attempts == 1
    assert site.hits["a.test/gone"] == 1


@pytest.mark.asyncio
async def test_cache_hit_skips_network():
    site = Site()
    crawler = make_crawler(site)

    await crawler.crawl(["https://a.test/page?b=2&a=1"])
    second = (await crawler.crawl(["https://A.test/page?a=1&b=2#top"])).results[0]

    assert second.success is True
    assert second.from_cache is True
    assert site.hits["a.test/page"] == 1


@pytest.mark.asyncio
async def test_empty_document_is_an_extraction_failure():
    crawler = make_crawler(Site())
    result = (await crawler.crawl(["https://a.test/empty"])).results[0]
    assert result.error == CrawlErrorReason.EXTRACTION_FAILED


@pytest.mark.asyncio
async def test_slow_url_does_not_affect_the_others():
    calls: Counter[str] = Counter()

    async def fetcher(_client, url, _timeout):
        calls[url] += 1
        if "slow" in url:
            await asyncio.sleep(5)
        return FetchedPage(text=PAGE, final_url=url)

    crawler = make_crawler(
        Site(),
        fetcher=fetcher,
        timeout_seconds=0.05,
        max_attempts=2,
        robots=None,
    )
    urls = ["https://a.test/1", "https://slow.test/x", "https://b.test/2"]

    response = await crawler.crawl(urls)

    assert [r.success for r in response.results] == [True, False, True]
    assert response.results[1].error == CrawlErrorReason.FETCH_FAILED
    assert calls["https://slow.test/x"] == 2


@pytest.mark.asyncio
async def test_backoff_releases_the_slot_for_other_urls():
    loop = asyncio.get_running_loop()
    finished: dict[str, float] = {}
    failures: list[float] = []

    async def fetcher(_client, url, _timeout):
        if "down" in url:
            failures.append(loop.time())
            raise TransientFetchError("503 Service Unavailable")
        finished[url] = loop.time()
        return FetchedPage(text=PAGE, final_url=url)

    crawler = make_crawler(
        Site(),
        fetcher=fetcher,
        robots=None,
        cache=None,
        max_concurrency=1,
        max_attempts=3,
        backoff_base_seconds=0.1,
    )
    urls = ["https://down.test/x", "https://a.test/1", "https://b.test/2"]

    started = loop.time()
    response = await crawler.crawl(urls)
    elapsed = loop.time() - started

    assert [r.success for r in response.results] == [False, True, True]
    assert response.results[0].attempts == 3
    assert len(failures) == 3
    # both healthy URLs got the single slot while the failing one was backing off
    assert max(finished.values()) < failures[-1]
    assert elapsed < 1.0



@pytest.mark.asyncio
async def test_unexpected_fetcher_error_becomes_data():
    async def fetcher(_client, url, _timeout):
        raise ValueError("boom")

    crawler = make_crawler(Site(), fetcher=fetcher, robots=None)
    result = (await crawler.crawl(["https://a.test/x"])).results[0]

    assert result.error == CrawlErrorReason.FETCH_FAILED
    assert result.attempts == 1
    assert "boom" in result.detail


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def fetcher(_client, url, _timeout):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return FetchedPage(text=PAGE, final_url=url)

    crawler = make_crawler(Site(), fetcher=fetcher, robots=None, cache=None, max_concurrency=2)
    response = await crawler.crawl([f"https://a.test/{i}" for i in range(6)])

    assert response.success is True
    assert peak == 2


@pytest.mark.asyncio
async def test_cancellation_propagates():
    async def fetcher(_client, url, _timeout):
        await asyncio.sleep(10)
        return FetchedPage(text=PAGE, final_url=url)

    crawler = make_crawler(Site(), fetcher=fetcher, robots=None, timeout_seconds=30)
    task = asyncio.create_task(crawler.crawl(["https://a.test/1", "https://a.test/2"]))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


def test_result_dict_shape():
    from deepsearch.tools.crawler import BulkCrawlResponse, CrawlData, CrawlResult

    response = BulkCrawlResponse(
        success=False,
        results=[
            CrawlResult(url="https://a.test", success=True, data=CrawlData(markdown="# Hi")),
            CrawlResult(url="https://b.test", success=False, error=CrawlErrorReason.ROBOTS_DISALLOWED),
        ],
    )
    payload = response.to_dict()

    assert payload["results"][0] == {
        "url": "https://a.test",
        "success": True,
        "data": {"markdown": "# Hi", "title": None, "links": []},
    }
    assert payload["results"][1]["error"] == "RobotsDisallowed"
    assert "1 of 2" in payload["error"]
