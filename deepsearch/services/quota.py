from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from loguru import logger

from deepsearch.config import settings
from deepsearch.models.schemas import QuotaStatus
from deepsearch.services.store import ChatStore

UNLIMITED = -1


class QuotaGate:
    """Per-user daily request budget.

    "Today" starts at midnight in ``tz``. The count is derived from the
    request ledger on every check, so there is no counter to reset.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        limit: int | None = None,
        tz: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.limit = settings.daily_request_limit if limit is None else int(limit)
        self.tz = ZoneInfo(tz or settings.quota_timezone)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def window_start(self) -> datetime:
        local_now = self.now().astimezone(self.tz)
        return local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def check_quota(self, user_id: str) -> QuotaStatus:
        try:
            if await self.store.is_admin(user_id):
                return QuotaStatus(allowed=True, remaining=UNLIMITED, limit=UNLIMITED)
            count = await self.store.count_requests_since(user_id, self.window_start())
        except Exception as e:
            logger.error(f"Quota check failed for {user_id}; denying request: {e}")
            return QuotaStatus(allowed=False, remaining=0, limit=self.limit, degraded=True)

        return QuotaStatus(
            allowed=count < self.limit,
            remaining=max(0, self.limit - count),
            limit=self.limit,
        )

    async def record_request(self, user_id: str) -> None:
        await self.store.record_request(user_id, self.now())
