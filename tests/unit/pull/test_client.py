"""Tests for PullClient: reconnects, outbound queue, routing and dedupe."""

import asyncio
import json

import pytest

from b24sdk.core.errors import ConfigurationError, TransportError
from b24sdk.core.result import ResultEnvelope
from b24sdk.integrations.pull.channel_manager import ChannelManager
from b24sdk.integrations.pull.client import PullClient, PullStatus, SubscriptionType
from b24sdk.integrations.pull.codec import SENDER_BACKEND, SENDER_CLIENT
from b24sdk.integrations.pull.connector import (
    CHANNEL_EXPIRED,
    CONFIG_EXPIRED,
    CONFIG_REPLACED,
    SERVER_RESTARTED,
)
from tests.conftest import FakeConnector

pytestmark = [pytest.mark.unit, pytest.mark.pull]


def frame_for(client, module_id, command, params=None, *, mid="01", sender_type=SENDER_BACKEND, extra=None):
    batch = client.codec.schema.ResponseBatch()
    outgoing = batch.responses.add().outgoing_messages.messages.add()
    outgoing.id = bytes.fromhex(mid)
    outgoing.body = json.dumps(
        {"module_id": module_id, "command": command, "params": params or {}, "extra": extra or {}}
    )
    outgoing.sender.type = sender_type
    return batch.SerializeToString()


async def wait_until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


class FakeRest:
    def __init__(self, data):
        self.data = data
        self.calls = []

    async def call_method(self, method, params=None, start=None, **kwargs):
        self.calls.append((method, params))
        return ResultEnvelope.ok(self.data, method=method)


@pytest.mark.asyncio
@pytest.mark.critical
async def test_queued_frames_are_flushed_once_after_reconnect(fake_clock):
    connector = FakeConnector(
        [TransportError(error_code="PULL_CONNECT_FAILED", message="refused"), []]
    )
    client = PullClient(connector, sleep=fake_clock.sleep, rand=lambda: 0.0)
    statuses = []
    client.subscribe_status(statuses.append)

    assert await client.send(b"sub-1") is False
    assert await client.send(b"sub-2") is False
    assert client.queued == 2

    await client.start()
    await asyncio.wait_for(connector.exhausted.wait(), 1.0)
    await client.stop()

    assert connector.sent == [b"sub-1", b"sub-2"]
    assert client.queued == 0
    assert fake_clock.sleeps == [15.0, 0.5]
    assert statuses[:4] == [
        PullStatus.CONNECTING,
        PullStatus.RECONNECTING,
        PullStatus.CONNECTING,
        PullStatus.CONNECTED,
    ]
    assert client.status == PullStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_send_while_connected_goes_out_immediately(fake_clock):
    connector = FakeConnector([[]], hold=True)
    client = PullClient(connector, sleep=fake_clock.sleep)

    async with client:
        await wait_until(lambda: client.is_connected)
        assert await client.send(b"hello") is True

    assert connector.sent == [b"hello"]
    assert client.status == PullStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_outbound_queue_drops_oldest_when_full():
    client = PullClient(FakeConnector(), queue_limit=2)

    for frame in (b"1", b"2", b"3"):
        await client.send(frame)

    assert client.queued == 2
    assert list(client._outbound) == [b"2", b"3"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    client = PullClient(FakeConnector())
    received = []

    def broken(message):
        raise RuntimeError("subscriber bug")

    async def on_update(message):
        received.append(message.params["ID"])

    client.subscribe(broken)
    client.subscribe(on_update, module_id="CRM", command="onCrmDealUpdate")
    client.subscribe(lambda m: received.append("other"), module_id="tasks")

    delivered = await client.handle_frame(frame_for(client, "crm", "onCrmDealUpdate", {"ID": 15}))

    assert delivered == 1
    assert received == [15]
    assert client.history[("crm", "onCrmDealUpdate")] == 1


@pytest.mark.asyncio
async def test_subscribe_is_idempotent_and_reversible():
    client = PullClient(FakeConnector())
    received = []

    unsubscribe = client.subscribe(received.append, module_id="im")
    client.subscribe(received.append, module_id="im")
    await client.handle_frame(frame_for(client, "im", "message", mid="01"))
    unsubscribe()
    await client.handle_frame(frame_for(client, "im", "message", mid="02"))

    assert len(received) == 1


@pytest.mark.asyncio
async def test_duplicate_messages_are_delivered_once():
    client = PullClient(FakeConnector())
    received = []
    client.subscribe(received.append)

    frame = frame_for(client, "im", "message", mid="aa01")
    assert await client.handle_frame(frame) == 1
    assert await client.handle_frame(frame) == 0

    for index in range(10):
        await client.handle_frame(frame_for(client, "im", "message", mid=f"bb{index:02d}"))
    assert await client.handle_frame(frame) == 1

    assert len(received) == 12
    assert client.message_count == 12


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped():
    client = PullClient(FakeConnector())
    received = []
    client.subscribe(received.append)

    assert await client.handle_frame(b"\xff\xff\xff") == 0
    assert await client.handle_frame("not a frame") == 0
    assert received == []


@pytest.mark.asyncio
async def test_client_events_go_to_client_subscribers():
    client = PullClient(FakeConnector())
    server, from_clients = [], []
    client.subscribe(server.append)
    client.subscribe(from_clients.append, type=SubscriptionType.CLIENT, module_id="application")

    await client.handle_frame(frame_for(client, "application", "ping", sender_type=SENDER_CLIENT))

    assert server == []
    assert [m.command for m in from_clients] == ["ping"]


@pytest.mark.asyncio
async def test_stale_online_events_are_skipped():
    client = PullClient(FakeConnector(), wall_clock=lambda: 10_000.0)
    online = []
    client.subscribe(online.append, type="online")

    await client.handle_frame(
        frame_for(client, "online", "userStatus", mid="01", extra={"server_time_unix": 10_000 - 300})
    )
    await client.handle_frame(
        frame_for(client, "online", "userStatus", mid="02", extra={"server_time_unix": 10_000 - 10})
    )

    assert [m.mid for m in online] == ["02"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "command, params, code",
    [
        ("SERVER_RESTART", {}, SERVER_RESTARTED),
        ("CONFIG_EXPIRE", {}, CONFIG_EXPIRED),
        ("CHANNEL_EXPIRE", {}, CHANNEL_EXPIRED),
        ("CHANNEL_EXPIRE", {"action": "reconnect", "channel": {"type": "private"}, "new_channel": {"id": "x"}}, CONFIG_REPLACED),
    ],
)
async def test_system_commands_close_the_channel(command, params, code):
    connector = FakeConnector()
    client = PullClient(connector)
    refreshed = []
    client.on_config_expired = lambda: refreshed.append(True)
    other = []
    client.subscribe(other.append)

    await client.handle_frame(frame_for(client, "pull", command, params))

    assert connector.closed == [code]
    assert other == []
    assert bool(refreshed) is (code in (CONFIG_EXPIRED, CHANNEL_EXPIRED))


@pytest.mark.asyncio
async def test_server_restart_waits_before_reconnecting(fake_clock):
    client = PullClient(FakeConnector([[]], hold=True), sleep=fake_clock.sleep)
    await client.start()
    await wait_until(lambda: client.is_connected)

    await client.handle_frame(frame_for(client, "pull", "SERVER_RESTART"))
    await asyncio.wait_for(client.connector.exhausted.wait(), 1.0)
    await client.stop()

    assert fake_clock.sleeps == [15.0]


@pytest.mark.asyncio
async def test_publish_to_users_resolves_public_channels(fake_clock):
    rest = FakeRest(
        {
            "5": {
                "user_id": 5,
                "public_id": "ab12",
                "signature": "cd34",
                "start": "2026-10-16T00:00:00+00:00",
                "end": "2099-01-01T00:00:00+00:00",
            }
        }
    )
    connector = FakeConnector([[]], hold=True)
    client = PullClient(connector, channel_manager=ChannelManager(rest), sleep=fake_clock.sleep)

    async with client:
        await wait_until(lambda: client.is_connected)
        assert await client.publish("application", "ping", {"n": 1}, user_ids=[5]) is True
        assert await client.publish("application", "ping", {"n": 2}, user_ids=[5], channels=["ef56.0a0b"]) is True

    assert rest.calls == [("pull.channel.public.get", {"users": [5]})]
    batch = client.codec.schema.RequestBatch()
    batch.ParseFromString(connector.sent[1])
    incoming = batch.requests[0].incoming_messages.messages[0]
    assert [r.id.hex() for r in incoming.receivers] == ["ab12", "ef56"]
    assert json.loads(incoming.body)["params"] == {"n": 2}


@pytest.mark.asyncio
async def test_publish_to_unknown_user_raises():
    client = PullClient(FakeConnector(), channel_manager=ChannelManager(FakeRest({})))

    with pytest.raises(ConfigurationError) as exc_info:
        await client.publish("application", "ping", user_ids=[99])

    assert exc_info.value.error_code == "PULL_UNKNOWN_RECEIVER"


@pytest.mark.asyncio
async def test_publish_without_channel_manager_raises():
    client = PullClient(FakeConnector())

    with pytest.raises(ConfigurationError) as exc_info:
        await client.publish("application", "ping", user_ids=[1])

    assert exc_info.value.error_code == "PULL_NO_CHANNEL_MANAGER"


@pytest.mark.asyncio
async def test_invalid_public_channel_is_rejected():
    client = PullClient(FakeConnector())

    with pytest.raises(ConfigurationError) as exc_info:
        await client.publish("application", "ping", channels=["no-signature"])

    assert exc_info.value.error_code == "PULL_INVALID_CHANNEL"


def rpc_frame(mid, module_id, command, params=None, **fields):
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "method": "incoming.message",
            "params": {
                "mid": mid,
                "body": {"module_id": module_id, "command": command, "params": params or {}},
                "sender": {"type": SENDER_BACKEND, "id": "s1"},
                **fields,
            },
        }
    )


class RecordingConnector(FakeConnector):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.urls = []

    async def open(self):
        self.urls.append(self.url)
        await super().open()


@pytest.mark.asyncio
async def test_online_event_with_bad_server_time_is_dropped():
    client = PullClient(FakeConnector(), wall_clock=lambda: 10_000.0)
    online = []
    client.subscribe(online.append, type="online")

    await client.handle_frame(
        frame_for(client, "online", "userStatus", mid="01", extra={"server_time_unix": "yesterday"})
    )
    await client.handle_frame(frame_for(client, "online", "userStatus", mid="02"))

    assert [m.mid for m in online] == ["02"]


@pytest.mark.asyncio
async def test_reconnect_resumes_from_last_message_id(fake_clock):
    connector = RecordingConnector()
    client = PullClient(connector, sleep=fake_clock.sleep, rand=lambda: 0.0)
    connector.sessions.extend([[frame_for(client, "im", "message", mid="0c0d")], []])

    await client.start()
    await asyncio.wait_for(connector.exhausted.wait(), 1.0)
    await client.stop()

    base = "wss://push.example.com/sub/"
    assert connector.urls == [base, f"{base}?mid=0c0d", f"{base}?mid=0c0d"]


@pytest.mark.asyncio
async def test_replaced_channel_is_reported_before_reconnect():
    connector = FakeConnector()
    client = PullClient(connector)
    replaced = []
    client.on_channel_replaced = lambda channel_type, channel: replaced.append((channel_type, channel))

    params = {"action": "reconnect", "channel": {"type": "shared"}, "new_channel": {"id": "n1"}}
    await client.handle_frame(frame_for(client, "pull", "CHANNEL_EXPIRE", params))

    assert replaced == [("shared", {"id": "n1"})]
    assert connector.closed == [CONFIG_REPLACED]


@pytest.mark.asyncio
async def test_json_rpc_pings_and_messages_are_answered(fake_clock):
    connector = FakeConnector([[]], hold=True)
    client = PullClient(connector, server_version=5, sleep=fake_clock.sleep)
    received = []
    client.subscribe(received.append, module_id="im")

    async with client:
        await wait_until(lambda: client.is_connected)
        assert await client.handle_frame("ping") == 0
        frame = rpc_frame("m-1", "im", "message", {"a": 1}, user_params={"b": 2})
        assert await client.handle_frame(frame) == 1
        assert await client.handle_frame(frame) == 0

    assert connector.sent == ["pong", "mack:m-1", "mack:m-1"]
    assert [m.params for m in received] == [{"a": 1, "b": 2}]
    assert received[0].extra["sender"] == {"type": SENDER_BACKEND, "id": "s1"}
    assert connector.last_message_id == "m-1"


@pytest.mark.asyncio
async def test_json_rpc_publish_leaves_user_lookup_to_the_server(fake_clock):
    connector = FakeConnector([[]], hold=True)
    client = PullClient(connector, server_version=5, sleep=fake_clock.sleep)

    async with client:
        await wait_until(lambda: client.is_connected)
        assert await client.publish("application", "ping", {"n": 1}, user_ids=[5], channels=["ef56.0a0b"]) is True

    request = json.loads(connector.sent[0])
    assert request["method"] == "publish"
    assert request["params"]["userList"] == [5]
    assert request["params"]["channelList"] == ["ef56.0a0b"]


@pytest.mark.asyncio
async def test_publish_is_rejected_by_plain_text_servers():
    client = PullClient(FakeConnector(), server_version=3)

    with pytest.raises(ConfigurationError) as exc_info:
        await client.publish("application", "ping", channels=["ef56.0a0b"])

    assert exc_info.value.error_code == "PULL_PUBLISH_UNSUPPORTED"
