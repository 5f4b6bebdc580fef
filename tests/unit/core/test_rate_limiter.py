"""Tests for the REST rate limiter (token bucket, operating time, adaptive throttling)."""

import asyncio

import pytest

from b24sdk.conf.restriction_config import RestrictionPolicy
from b24sdk.core.errors import RateLimitTimeout
from b24sdk.core.models import PayloadTime
from b24sdk.core.rate_limiter import RateLimiter
from tests.conftest import FakeClock

pytestmark = [pytest.mark.unit]


def _limiter(clock: FakeClock, **policy) -> RateLimiter:
    return RateLimiter(RestrictionPolicy(**policy), clock=clock, wall_clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
@pytest.mark.critical
async def test_m_calls_take_at_least_m_minus_one_over_r():
    clock = FakeClock()
    rate = 2.0
    limiter = _limiter(clock, max_requests_per_second=rate, burst_limit=1, adaptive_enabled=False)
    started = clock.now
    dispatched: list[float] = []

    for _ in range(5):
        async with limiter.acquire("crm.item.list"):
            dispatched.append(clock.now)

    assert clock.now - started >= (5 - 1) / rate - 1e-9
    gaps = [b - a for a, b in zip(dispatched, dispatched[1:])]
    assert all(gap >= 1 / rate - 1e-9 for gap in gaps)


@pytest.mark.asyncio
async def test_burst_is_served_without_waiting():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=2.0, burst_limit=3)

    for _ in range(3):
        async with limiter.acquire("crm.item.get"):
            pass

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_deadline_raises_rate_limit_timeout_and_releases_permit():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=1.0, burst_limit=1)

    async with limiter.acquire("crm.item.get"):
        pass

    with pytest.raises(RateLimitTimeout) as exc_info:
        async with limiter.acquire("crm.item.get", timeout=0.1):
            pass

    assert exc_info.value.error_code == "RATE_LIMIT_TIMEOUT"
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_concurrency_bound_suspends_extra_callers():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=100.0, burst_limit=100, max_concurrent_batch_commands=2)
    release = asyncio.Event()

    async def hold():
        async with limiter.acquire("crm.item.list"):
            await release.wait()

    tasks = [asyncio.create_task(hold()) for _ in range(3)]
    for _ in range(5):
        await asyncio.sleep(0)

    assert limiter.in_flight == 2

    release.set()
    await asyncio.gather(*tasks)
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_handle_exceeded_empties_bucket_for_the_whole_pause():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=2.0, burst_limit=10, sleep_interval_ms=1000)

    pause = await limiter.handle_exceeded()
    assert pause == pytest.approx(1.5)

    started = clock.now
    async with limiter.acquire("crm.item.list"):
        pass
    assert clock.now - started == pytest.approx(1.5)
    assert limiter.get_stats()["exceeded_count"] == 1


@pytest.mark.asyncio
async def test_repeated_errors_reduce_limits_and_successes_restore_them():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=2.0, burst_limit=50)

    for _ in range(5):
        await limiter.handle_exceeded()

    assert limiter.drain_rate == pytest.approx(1.6)
    assert limiter.burst_limit == pytest.approx(40.0)

    for _ in range(20):
        await limiter.update_stats("crm.item.get", None)

    assert limiter.drain_rate == pytest.approx(1.76)
    assert limiter.burst_limit == pytest.approx(44.0)


@pytest.mark.asyncio
async def test_reduced_limits_have_a_floor():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=0.6, burst_limit=6)

    for _ in range(50):
        await limiter.handle_exceeded()

    assert limiter.drain_rate == pytest.approx(0.5)
    assert limiter.burst_limit == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_operating_limit_blocks_until_reset():
    clock = FakeClock()
    limiter = _limiter(clock, adaptive_enabled=False)
    await limiter.update_stats(
        "crm.item.list",
        PayloadTime(operating=476.0, operating_reset_at=clock.now + 30),
    )

    assert limiter.time_to_free("crm.item.list") == pytest.approx(31.0)
    assert limiter.time_to_free("crm.deal.list") == 0.0
    assert limiter.get_stats()["heavy_request_count"] == 1

    with pytest.raises(RateLimitTimeout):
        async with limiter.acquire("crm.item.list", timeout=5):
            pass

    async with limiter.acquire("crm.item.list"):
        pass
    assert 31.0 in clock.sleeps


@pytest.mark.asyncio
async def test_adaptive_delay_near_operating_limit():
    clock = FakeClock()
    limiter = _limiter(clock)
    await limiter.update_stats(
        "crm.item.list",
        PayloadTime(operating=400.0, operating_reset_at=clock.now + 100),
    )

    assert limiter.time_to_free("crm.item.list") == 0.0
    assert limiter.adaptive_delay("crm.item.list") == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_batch_uses_stats_of_its_sub_methods():
    clock = FakeClock()
    limiter = _limiter(clock)
    await limiter.update_stats(
        "batch::crm.item.list",
        PayloadTime(operating=400.0, operating_reset_at=clock.now + 100),
    )

    params = {"halt": 0, "cmd": {"a": "crm.item.list?entityTypeId=2", "b": "crm.item.get?id=1"}}
    assert limiter.adaptive_delay("batch", params) == pytest.approx(1.0)
    # Sub-call stats never count as successes of the limiter itself.
    assert limiter.get_stats()["recent_successes"] == 0


@pytest.mark.asyncio
async def test_reset_restores_initial_state():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests_per_second=2.0, burst_limit=50)
    for _ in range(5):
        await limiter.handle_exceeded()

    await limiter.reset()

    stats = limiter.get_stats()
    assert stats["drain_rate"] == 2.0
    assert stats["burst_limit"] == 50.0
    assert stats["exceeded_count"] == 0
