from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable
from urllib.robotparser import RobotFileParser

import httpx
from loguru import logger

from deepsearch.tools.web_utils import origin


@dataclass
class _Lookup:
    task: asyncio.Task
    waiters: int = 0


class RobotsPolicyCache:
    """Per-origin robots.txt policies, fetched once and kept for ``ttl_seconds``.

    A missing robots file (any 4xx) or an unreachable one allows everything.
    A 5xx means the server could not say, so the origin is disallowed for
    ``unavailable_ttl_seconds`` and asked again after that.

    Concurrent callers for the same origin share one in-flight lookup.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        ttl_seconds: int = 3600,
        unavailable_ttl_seconds: int = 60,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.user_agent = user_agent
        self.ttl_seconds = max(int(ttl_seconds), 0)
        self.unavailable_ttl_seconds = max(int(unavailable_ttl_seconds), 0)
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        # origin -> (fetched_at, ttl, parser)
        self._policies: dict[str, tuple[float, int, RobotFileParser | None]] = {}
        self._pending: dict[str, _Lookup] = {}

    async def allowed(
        self,
        url: str,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore | None = None,
    ) -> bool:
        parser = await self._policy_for(origin(url), client, semaphore)
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    async def _policy_for(
        self,
        site: str,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore | None,
    ) -> RobotFileParser | None:
        cached = self._policies.get(site)
        if cached is not None:
            fetched_at, ttl, parser = cached
            if self._clock() - fetched_at < ttl:
                return parser

        lookup = self._pending.get(site)
        if lookup is None:
            lookup = _Lookup(asyncio.create_task(self._load(site, client, semaphore)))
            self._pending[site] = lookup
            lookup.task.add_done_callback(lambda _task: self._forget(site, lookup))

        lookup.waiters += 1
        try:
            # shield: one cancelled caller must not cancel the lookup for the rest
            return await asyncio.shield(lookup.task)
        finally:
            lookup.waiters -= 1
            if lookup.waiters == 0 and not lookup.task.done():
                self._forget(site, lookup)
                lookup.task.cancel()

    def _forget(self, site: str, lookup: _Lookup) -> None:
        if self._pending.get(site) is lookup:
            del self._pending[site]

    async def _load(
        self,
        site: str,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore | None,
    ) -> RobotFileParser | None:
        if semaphore is None:
            parser, ttl = await self._fetch(site, client)
        else:
            async with semaphore:
                parser, ttl = await self._fetch(site, client)
        self._policies[site] = (self._clock(), ttl, parser)
        return parser

    async def _fetch(
        self, site: str, client: httpx.AsyncClient
    ) -> tuple[RobotFileParser | None, int]:
        robots_url = f"{site}/robots.txt"
        try:
            response = await client.get(
                robots_url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.HTTPError as exc:
            logger.debug(f"robots.txt unreachable for {site}: {exc}")
            return None, self.unavailable_ttl_seconds

        if response.status_code >= 500:
            logger.debug(f"robots.txt for {site} returned {response.status_code}; disallowing for now")
            parser = RobotFileParser(robots_url)
            parser.disallow_all = True
            return parser, self.unavailable_ttl_seconds

        if response.status_code >= 400:
            return None, self.ttl_seconds

        parser = RobotFileParser(robots_url)
        parser.parse(response.text.splitlines())
        return parser, self.ttl_seconds
