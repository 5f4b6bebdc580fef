"""Rate limiter for REST calls.

Token bucket (burst + drain rate) combined with a concurrency bound and the
portal's per-method operating-time limit. Callers never get rejected for
exceeding the rate: they are delayed until a token is free, unless they pass
a deadline, in which case ``RateLimitTimeout`` is raised instead.

Usage:
    limiter = RateLimiter(get_restriction_policy("default"))

    async with limiter.acquire("crm.item.list", timeout=10):
        response = await transport.send(request)
    await limiter.update_stats("crm.item.list", payload_time)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import RateLimitTimeout

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from b24sdk.conf.restriction_config import RestrictionPolicy
    from b24sdk.core.models import PayloadTime

logger = logging.getLogger(__name__)

ERROR_WINDOW_SECONDS = 60.0
ERROR_THRESHOLD = 5
SUCCESS_THRESHOLD = 20
MIN_DRAIN_RATE = 0.5
MIN_BURST_LIMIT = 5
OPERATING_BUFFER_SECONDS = 5.0
DEFAULT_ADAPTIVE_DELAY_SECONDS = 7.0

BATCH_PREFIX = "batch::"


@dataclass
class OperatingStat:
    """Operating time the server reported for one method (seconds, unix time)."""

    operating: float
    operating_reset_at: float
    updated_at: float


@dataclass
class LimiterStats:
    """Counters exposed for monitoring."""

    limit_hits: int = 0
    exceeded_count: int = 0
    adaptive_delays: int = 0
    total_adaptive_delay: float = 0.0
    heavy_request_count: int = 0


class RateLimiter:
    """Token bucket limiter with adaptive throttling and operating-time blocking.

    Args:
        policy: Restriction policy (read-only, copied into limiter state)
        clock: Monotonic clock for the bucket, seconds
        wall_clock: Unix clock, used to compare with ``operating_reset_at``
        sleep: Coroutine used for every wait
    """

    def __init__(
        self,
        policy: RestrictionPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        self._drain_rate = policy.max_requests_per_second
        self._burst_limit = float(policy.burst_limit)
        self._tokens = self._burst_limit
        self._last_refill = clock()

        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(policy.max_concurrent_batch_commands)
        self._in_flight = 0

        self._errors: deque[float] = deque()
        self._successes: deque[float] = deque()
        self._operating: dict[str, OperatingStat] = {}
        self._stats = LimiterStats()

    # -------------------------------------------------------------------------
    # Permit
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def acquire(
        self,
        method: str = "",
        *,
        timeout: float | None = None,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[None]:
        """Wait for a permit; it is released when the ``async with`` block exits.

        Raises:
            RateLimitTimeout: the permit could not be obtained within ``timeout``
        """
        deadline = None if timeout is None else self._clock() + timeout

        await self._wait_for(self._semaphore.acquire(), deadline, method)
        self._in_flight += 1
        try:
            await self._apply_operating_limits(method, params, deadline)
            await self._wait_for(self._lock.acquire(), deadline, method)
            try:
                await self._take_token(method, deadline)
            finally:
                self._lock.release()
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()

    async def _wait_for(self, awaitable: Awaitable[Any], deadline: float | None, method: str) -> None:
        if deadline is None:
            await awaitable
            return
        remaining = deadline - self._clock()
        try:
            await asyncio.wait_for(awaitable, timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            raise self._timeout_error(method, deadline) from None

    async def _take_token(self, method: str, deadline: float | None) -> None:
        attempt = 1
        while True:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return

            wait = (1 - self._tokens) / self._drain_rate
            if deadline is not None and self._clock() + wait > deadline:
                raise self._timeout_error(method, deadline)

            self._stats.limit_hits += 1
            logger.debug(
                "[B24:LIMIT] %s waits %.3fs for a token (attempt %d)",
                method or "?",
                wait,
                attempt,
            )
            await self._sleep(wait)
            attempt += 1

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        self._tokens = min(self._burst_limit, self._tokens + elapsed * self._drain_rate)
        self._last_refill = now

    def _timeout_error(self, method: str, deadline: float) -> RateLimitTimeout:
        return RateLimitTimeout(
            error_code="RATE_LIMIT_TIMEOUT",
            message=f"Permit for {method or 'request'} not acquired before deadline",
            context={"method": method, "tokens": round(self._tokens, 3), "deadline": deadline},
        )

    # -------------------------------------------------------------------------
    # Operating time
    # -------------------------------------------------------------------------

    async def _apply_operating_limits(
        self,
        method: str,
        params: dict[str, Any] | None,
        deadline: float | None,
    ) -> None:
        wait = self.time_to_free(method, params)
        kind = "operating"
        if wait <= 0:
            wait = self.adaptive_delay(method, params)
            kind = "adaptive"
            if wait > 0:
                self._stats.adaptive_delays += 1
                self._stats.total_adaptive_delay += wait
        if wait <= 0:
            return

        if deadline is not None and self._clock() + wait > deadline:
            raise self._timeout_error(method, deadline)

        self._stats.limit_hits += 1
        logger.info("[B24:LIMIT] %s blocked by %s limit for %.2fs", method, kind, wait)
        await self._sleep(wait)

    def time_to_free(self, method: str, params: dict[str, Any] | None = None) -> float:
        """Seconds until ``method`` is below its operating limit again."""
        self._cleanup_operating()

        if method == "batch":
            return max((self.time_to_free(f"{BATCH_PREFIX}{m}") for m in _batch_methods(params)), default=0.0)

        stat = self._operating.get(method)
        if stat is None:
            return 0.0

        limit = max(1.0, self.policy.operating_limit_ms / 1000 - OPERATING_BUFFER_SECONDS)
        if stat.operating >= limit:
            now = self._wall_clock()
            if stat.operating_reset_at > now:
                return stat.operating_reset_at - now + 1.0
            return OPERATING_BUFFER_SECONDS
        return 0.0

    def adaptive_delay(self, method: str, params: dict[str, Any] | None = None) -> float:
        """Soft delay for methods close to their operating limit."""
        if not self.policy.adaptive_enabled:
            return 0.0

        if method == "batch":
            return max((self.adaptive_delay(f"{BATCH_PREFIX}{m}") for m in _batch_methods(params)), default=0.0)

        stat = self._operating.get(method)
        if stat is None:
            return 0.0

        usage_percent = stat.operating * 1000 / self.policy.operating_limit_ms * 100
        if usage_percent <= self.policy.adaptive_threshold_percent:
            return 0.0

        now = self._wall_clock()
        if stat.operating_reset_at > now:
            delay = (stat.operating_reset_at - now) * self.policy.adaptive_delay_coefficient
        else:
            delay = DEFAULT_ADAPTIVE_DELAY_SECONDS
        return min(delay, self.policy.max_adaptive_delay_ms / 1000)

    def _cleanup_operating(self) -> None:
        max_age = self.policy.operating_window_ms / 1000 + 10
        now = self._clock()
        for method in [m for m, s in self._operating.items() if now - s.updated_at > max_age]:
            del self._operating[method]

    # -------------------------------------------------------------------------
    # Feedback from responses
    # -------------------------------------------------------------------------

    async def update_stats(self, method: str, payload_time: PayloadTime | None) -> None:
        """Record a successful response and the operating time it reported."""
        if payload_time is not None and payload_time.operating is not None:
            stat = OperatingStat(
                operating=float(payload_time.operating),
                operating_reset_at=float(payload_time.operating_reset_at or 0),
                updated_at=self._clock(),
            )
            self._operating[method] = stat
            usage_percent = stat.operating * 1000 / self.policy.operating_limit_ms * 100
            if usage_percent > self.policy.heavy_percent:
                self._stats.heavy_request_count += 1
                logger.warning(
                    "[B24:LIMIT] %s used %.1f%% of its operating limit", method, usage_percent
                )

        if method.startswith(BATCH_PREFIX):
            return

        async with self._lock:
            now = self._clock()
            self._successes.append(now)
            self._trim(now)
            if self.policy.adaptive_enabled and self._should_restore():
                self._restore_limits()

    async def handle_exceeded(self) -> float:
        """React to QUERY_LIMIT_EXCEEDED: empty the bucket, maybe shrink it.

        Returns the pause (seconds) the next permit will have to wait.
        """
        async with self._lock:
            now = self._clock()
            self._errors.append(now)
            self._trim(now)
            self._stats.exceeded_count += 1

            if self.policy.adaptive_enabled and len(self._errors) >= ERROR_THRESHOLD:
                self._reduce_limits()

            pause = 1.0 / self._drain_rate + self.policy.sleep_interval_ms / 1000
            # Tokens go negative so the next acquire waits for the whole pause.
            self._tokens = -self.policy.sleep_interval_ms / 1000 * self._drain_rate
            self._last_refill = now
            return pause

    def _trim(self, now: float) -> None:
        for timestamps in (self._errors, self._successes):
            while timestamps and now - timestamps[0] > ERROR_WINDOW_SECONDS:
                timestamps.popleft()

    def _should_restore(self) -> bool:
        return (
            len(self._successes) >= SUCCESS_THRESHOLD
            and len(self._errors) < ERROR_THRESHOLD / 2
            and (
                self._drain_rate < self.policy.max_requests_per_second
                or self._burst_limit < self.policy.burst_limit
            )
        )

    def _reduce_limits(self) -> None:
        self._drain_rate = max(MIN_DRAIN_RATE, round(self._drain_rate * 0.8, 2))
        self._burst_limit = max(float(MIN_BURST_LIMIT), round(self._burst_limit * 0.8, 2))
        self._tokens = min(self._tokens, self._burst_limit)
        self._errors.clear()
        self._successes.clear()
        logger.warning(
            "[B24:LIMIT] limits reduced: drain_rate=%.2f burst=%.0f",
            self._drain_rate,
            self._burst_limit,
        )

    def _restore_limits(self) -> None:
        self._drain_rate = min(self.policy.max_requests_per_second, round(self._drain_rate * 1.1, 2))
        self._burst_limit = min(float(self.policy.burst_limit), round(self._burst_limit * 1.1, 2))
        self._successes.clear()
        logger.info(
            "[B24:LIMIT] limits restored: drain_rate=%.2f burst=%.0f",
            self._drain_rate,
            self._burst_limit,
        )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def drain_rate(self) -> float:
        return self._drain_rate

    @property
    def burst_limit(self) -> float:
        return self._burst_limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def get_stats(self) -> dict[str, Any]:
        """Snapshot for monitoring endpoints and logs."""
        self._refill()
        return {
            "tokens": round(self._tokens, 3),
            "drain_rate": self._drain_rate,
            "burst_limit": self._burst_limit,
            "original_drain_rate": self.policy.max_requests_per_second,
            "original_burst_limit": self.policy.burst_limit,
            "in_flight": self._in_flight,
            "recent_errors": len(self._errors),
            "recent_successes": len(self._successes),
            "limit_hits": self._stats.limit_hits,
            "exceeded_count": self._stats.exceeded_count,
            "adaptive_delays": self._stats.adaptive_delays,
            "heavy_request_count": self._stats.heavy_request_count,
            "operating": {m: round(s.operating, 2) for m, s in self._operating.items()},
        }

    async def reset(self) -> None:
        async with self._lock:
            self._drain_rate = self.policy.max_requests_per_second
            self._burst_limit = float(self.policy.burst_limit)
            self._tokens = self._burst_limit
            self._last_refill = self._clock()
            self._errors.clear()
            self._successes.clear()
            self._operating.clear()
            self._stats = LimiterStats()


def _batch_methods(params: dict[str, Any] | None) -> list[str]:
    """Distinct method names of a batch body (v2 ``cmd`` strings or v3 command list)."""
    if not params:
        return []
    commands = params.get("cmd")
    if isinstance(commands, dict):
        rows = list(commands.values())
    elif isinstance(commands, list):
        rows = commands
    else:
        return []

    methods: list[str] = []
    for row in rows:
        if isinstance(row, str):
            name = row.split("?", 1)[0]
        elif isinstance(row, dict):
            name = str(row.get("method", ""))
        else:
            continue
        if name and name not in methods:
            methods.append(name)
    return methods
