import pytest

from b24sdk.conf.restriction_config import BATCH_PROCESSING_POLICY
from b24sdk.core.models import ApiVersion
from b24sdk.integrations.rest.client import B24Client
from b24sdk.integrations.rest.transport import HttpResponse
from tests.conftest import BASE_URL, FakeTransport, method_of

pytestmark = [pytest.mark.unit, pytest.mark.rest]


def test_webhook_url_gets_trailing_slash():
    client = B24Client.from_webhook(BASE_URL.rstrip("/"), transport=FakeTransport(lambda request: {}))

    assert client.base_url == BASE_URL
    assert client.version == ApiVersion.V2


def test_preset_name_is_resolved():
    client = B24Client(BASE_URL, transport=FakeTransport(lambda request: {}), policy="batch-processing")

    assert client.policy is BATCH_PROCESSING_POLICY
    assert client.get_stats()["drain_rate"] == BATCH_PROCESSING_POLICY.max_requests_per_second


@pytest.mark.asyncio
async def test_health_check_and_ping(fast_limiter):
    transport = FakeTransport(lambda request: {"result": "2026-10-16T10:00:00+00:00"})
    client = B24Client(BASE_URL, transport=transport, limiter=fast_limiter)

    assert await client.health_check() is True
    assert await client.ping() >= 0
    assert [method_of(r) for r in transport.requests] == ["server.time", "server.time"]


@pytest.mark.asyncio
async def test_health_check_reports_failures(fast_limiter):
    def handler(request):
        raise OSError("unreachable")

    client = B24Client(BASE_URL, transport=FakeTransport(handler), limiter=fast_limiter)

    assert await client.health_check() is False
    assert await client.ping() == -1.0


@pytest.mark.asyncio
async def test_ping_on_api_error(fast_limiter):
    transport = FakeTransport(
        lambda request: HttpResponse.from_json(401, {"error": "INVALID_CREDENTIALS", "error_description": "x"})
    )
    client = B24Client(BASE_URL, transport=transport, limiter=fast_limiter)

    assert await client.ping() == -1.0
    assert await client.health_check() is False


@pytest.mark.asyncio
async def test_client_shares_one_limiter_between_helpers(fast_limiter):
    client = B24Client(BASE_URL, transport=FakeTransport(lambda request: {"result": []}), limiter=fast_limiter)

    async with client:
        await client.call_method("crm.deal.list")
        await client.call_fast_list_method("crm.deal.list")

    assert client.batch.dispatcher is client.dispatcher
    assert client.lists.dispatcher.limiter is fast_limiter
