import asyncio
import inspect
from collections import deque

import pytest

from b24sdk.conf.restriction_config import RestrictionPolicy
from b24sdk.core.errors import TransportError
from b24sdk.core.rate_limiter import RateLimiter
from b24sdk.integrations.pull.connector import NORMAL_CLOSURE, Connector
from b24sdk.integrations.rest.dispatcher import CallDispatcher
from b24sdk.integrations.rest.transport import HttpResponse

BASE_URL = "https://portal.bitrix24.com/rest/1/abcdef123456/"


class FakeClock:
    """Monotonic and wall clock in one; ``sleep`` advances it instantly."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTransport:
    """Records requests; ``handler(request)`` returns a payload, an HttpResponse or raises."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    async def send(self, request):
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, HttpResponse):
            return result
        return HttpResponse.from_json(200, result)


class FakeConnector(Connector):
    """Scripted pull channel.

    ``sessions`` holds one entry per ``open()``: an exception to raise or a list
    of frames delivered before the channel drops. With ``hold`` the channel
    stays up after its frames until ``close()``. When the script runs out,
    ``open()`` blocks and ``exhausted`` is set.
    """

    def __init__(self, sessions=(), *, hold: bool = False):
        super().__init__("wss://push.example.com/sub/")
        self.sessions = deque(sessions)
        self.hold = hold
        self.sent: list = []
        self.closed: list[int] = []
        self.opens = 0
        self.exhausted = asyncio.Event()
        self._released = asyncio.Event()
        self._frames: list = []
        self._open = False

    @property
    def connected(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.opens += 1
        if not self.sessions:
            self.exhausted.set()
            await asyncio.Event().wait()
        item = self.sessions.popleft()
        if isinstance(item, Exception):
            raise item
        self._frames = list(item)
        self._released = asyncio.Event()
        self._open = True

    async def frames(self):
        for frame in self._frames:
            if not self._open:
                return
            yield frame
        if self.hold and self._open:
            await self._released.wait()
            return
        if self._open:
            self._open = False
            raise TransportError(error_code="PULL_CONNECTION_LOST", message="scripted drop")

    async def send(self, frame) -> None:
        if not self._open:
            raise TransportError(error_code="PULL_NOT_CONNECTED", message="closed")
        self.sent.append(frame)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self._open = False
        self._released.set()
        self.closed.append(code)


def method_of(request) -> str:
    return request.url.rsplit("/", 1)[-1]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_policy() -> RestrictionPolicy:
    return RestrictionPolicy(
        max_requests_per_second=1000.0,
        burst_limit=1000,
        max_concurrent_batch_commands=8,
        adaptive_enabled=False,
    )


@pytest.fixture
def fast_limiter(fast_policy, fake_clock) -> RateLimiter:
    return RateLimiter(fast_policy, clock=fake_clock, wall_clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def make_dispatcher(fast_limiter):
    """Factory: ``make_dispatcher(handler, version="v2") -> (dispatcher, transport)``."""

    def factory(handler, version: str = "v2"):
        transport = FakeTransport(handler)
        return CallDispatcher(BASE_URL, transport, fast_limiter, version=version), transport

    return factory
