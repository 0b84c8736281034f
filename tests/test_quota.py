from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from deepsearch.services.quota import QuotaGate
from deepsearch.services.store import InMemoryStore


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_fifty_requests_then_denied():
    clock = Clock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    gate = QuotaGate(InMemoryStore(), limit=50, tz="UTC", clock=clock)

    for i in range(50):
        status = await gate.check_quota("u1")
        assert status.allowed
        assert status.remaining == 50 - i
        await gate.record_request("u1")
        clock.now += timedelta(seconds=30)

    status = await gate.check_quota("u1")
    assert status.allowed is False
    assert status.remaining == 0
    assert status.limit == 50


@pytest.mark.asyncio
async def test_denied_check_records_nothing():
    store = InMemoryStore()
    clock = Clock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    gate = QuotaGate(store, limit=1, tz="UTC", clock=clock)
    await gate.record_request("u1")

    for _ in range(3):
        assert (await gate.check_quota("u1")).allowed is False

    assert await store.count_requests_since("u1", gate.window_start()) == 1


@pytest.mark.asyncio
async def test_quota_resets_at_midnight():
    clock = Clock(datetime(2026, 3, 10, 23, 50, tzinfo=timezone.utc))
    gate = QuotaGate(InMemoryStore(), limit=2, tz="UTC", clock=clock)
    await gate.record_request("u1")
    await gate.record_request("u1")
    assert (await gate.check_quota("u1")).allowed is False

    clock.now = datetime(2026, 3, 11, 0, 0, 1, tzinfo=timezone.utc)
    status = await gate.check_quota("u1")
    assert status.allowed is True
    assert status.remaining == 2


@pytest.mark.asyncio
async def test_window_follows_configured_timezone():
    # 22:00 in New York on March 9 is 02:00 UTC on March 10.
    clock = Clock(datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc))
    gate = QuotaGate(InMemoryStore(), limit=1, tz="America/New_York", clock=clock)
    await gate.record_request("u1")

    clock.now = datetime(2026, 3, 10, 3, 30, tzinfo=timezone.utc)
    assert (await gate.check_quota("u1")).allowed is False

    # Local midnight is 04:00 UTC while daylight time is in effect.
    clock.now = datetime(2026, 3, 10, 5, 30, tzinfo=timezone.utc)
    assert (await gate.check_quota("u1")).allowed is True


@pytest.mark.asyncio
async def test_other_users_do_not_share_budget():
    clock = Clock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    gate = QuotaGate(InMemoryStore(), limit=1, tz="UTC", clock=clock)
    await gate.record_request("u1")

    assert (await gate.check_quota("u1")).allowed is False
    assert (await gate.check_quota("u2")).allowed is True


@pytest.mark.asyncio
async def test_admin_is_unlimited():
    clock = Clock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    gate = QuotaGate(InMemoryStore(admins={"boss"}), limit=1, tz="UTC", clock=clock)
    for _ in range(5):
        await gate.record_request("boss")

    status = await gate.check_quota("boss")
    assert status.allowed is True
    assert status.remaining == -1
    assert status.limit == -1


class BrokenStore(InMemoryStore):
    async def count_requests_since(self, user_id, since):
        raise ConnectionError("database unreachable")


class BrokenAdminLookup(InMemoryStore):
    async def is_admin(self, user_id):
        raise ConnectionError("database unreachable")


@pytest.mark.asyncio
@pytest.mark.parametrize("store_cls", [BrokenStore, BrokenAdminLookup])
async def test_storage_error_fails_closed(store_cls):
    gate = QuotaGate(store_cls(), limit=50, tz="UTC")

    status = await gate.check_quota("u1")

    assert status.allowed is False
    assert status.remaining == 0
    assert status.limit == 50
    assert status.degraded is True
