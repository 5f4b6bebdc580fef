"""Tests for the parent-frame message bridge and slider."""

import asyncio
import json

import pytest

from b24sdk.core.errors import ApiError, ConfigurationError, TransportError
from b24sdk.integrations.frame.bridge import (
    METHOD_NOT_SUPPORTED_ON_DEVICE,
    MessageBridge,
    ParentCommands,
    Slider,
)

pytestmark = [pytest.mark.unit, pytest.mark.frame]


class FakeParent:
    """Parent window that answers every command with ``answer(message)``."""

    def __init__(self, answer=None):
        self.answer = answer
        self.messages = []
        self.bridge = None

    def post(self, message):
        self.messages.append(message)
        if self.answer is None:
            return
        key = message.rsplit(":", 2)[-2]
        reply = self.answer(message)
        asyncio.get_running_loop().call_soon(self.bridge.receive, f"{key}:{json.dumps(reply)}")


def connect(parent, **kwargs):
    bridge = MessageBridge(parent.post, app_sid="sid42", **kwargs)
    parent.bridge = bridge
    return bridge


@pytest.mark.asyncio
async def test_send_resolves_with_parent_answer():
    parent = FakeParent(lambda message: {"DOMAIN": "portal.bitrix24.com", "LANG": "en"})
    commands = ParentCommands(connect(parent))

    data = await commands.get_init_data()

    assert data == {"DOMAIN": "portal.bitrix24.com", "LANG": "en"}
    command, key, app_sid = parent.messages[0].split(":")
    assert command == "getInitData"
    assert len(key) == 32
    assert app_sid == "sid42"
    assert parent.bridge.pending == 0


@pytest.mark.asyncio
async def test_params_are_json_encoded():
    parent = FakeParent(lambda message: None)
    commands = ParentCommands(connect(parent))

    await commands.set_title("Deals: overview")

    command, rest = parent.messages[0].split(":", 1)
    params = rest.rsplit(":", 2)[0]
    assert command == "setTitle"
    assert json.loads(params) == {"title": "Deals: overview"}


@pytest.mark.asyncio
async def test_safely_call_resolves_on_silence():
    parent = FakeParent()
    bridge = connect(parent)

    result = await bridge.send("setInstallFinish", is_safely=True, safely_time=0.01)

    assert result == {"isSafely": True}
    assert bridge.pending == 0


@pytest.mark.asyncio
async def test_namespaced_command_is_sent_as_object():
    parent = FakeParent()
    bridge = connect(parent)
    seen = []

    task = asyncio.create_task(bridge.send("placement:bind", {"PLACEMENT": "CRM_DEAL_DETAIL_TAB"}, callback=seen.append))
    await asyncio.sleep(0)

    message = parent.messages[0]
    assert message["method"] == "placement:bind"
    assert message["params"] == {"PLACEMENT": "CRM_DEAL_DETAIL_TAB"}
    assert message["appSid"] == "sid42"

    assert bridge.receive(f"{message['callback']}:" + json.dumps({"ok": True}))
    assert await task == {"ok": True}
    assert bridge.receive(f"{message['callback']}:" + json.dumps({"ok": "again"}))
    assert seen == [{"ok": "again"}]


@pytest.mark.asyncio
async def test_messages_from_other_origins_are_ignored():
    parent = FakeParent()
    bridge = connect(parent, target_origin="https://portal.bitrix24.com")

    task = asyncio.create_task(bridge.send("getInitData"))
    await asyncio.sleep(0)
    key = parent.messages[0].rsplit(":", 2)[-2]

    assert bridge.receive(f"{key}:1", origin="https://evil.example.com") is False
    assert bridge.receive(f"{key}:1", origin="https://portal.bitrix24.com") is True
    assert await task == 1


@pytest.mark.asyncio
async def test_failed_post_leaves_nothing_pending():
    def post(message):
        raise RuntimeError("no parent window")

    bridge = MessageBridge(post)

    with pytest.raises(RuntimeError):
        await bridge.send("getInitData")
    assert bridge.pending == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("width, height", [(0, 100), (100, -1)])
async def test_resize_window_rejects_wrong_size(width, height):
    parent = FakeParent()
    commands = ParentCommands(connect(parent))

    with pytest.raises(ConfigurationError) as exc_info:
        await commands.resize_window(width, height)

    assert exc_info.value.error_code == "FRAME_WRONG_SIZE"
    assert parent.messages == []


@pytest.mark.asyncio
async def test_slider_reports_close():
    parent = FakeParent(lambda message: {"result": "close"})
    slider = Slider(connect(parent))

    result = await slider.open_path("/crm/deal/details/10/?tab=main")

    assert result == {"isOpenAtNewWindow": False, "isClose": True}
    params = json.loads(parent.messages[0].split(":", 1)[1].rsplit(":", 2)[0])
    assert params["path"] == (
        "/crm/type/0/details/0/../../../../../crm/deal/details/10/?tab=main&IFRAME=Y&IFRAME_TYPE=SIDE_SLIDER"
    )


@pytest.mark.asyncio
async def test_slider_falls_back_to_new_window():
    opened = []
    parent = FakeParent(lambda message: {"result": "error", "errorCode": METHOD_NOT_SUPPORTED_ON_DEVICE})
    slider = Slider(connect(parent), open_window=lambda url: opened.append(url) or True)

    result = await slider.open_path("/crm/deal/details/10/")

    assert result == {"isOpenAtNewWindow": True, "isClose": True}
    assert opened == ["/crm/deal/details/10/"]


@pytest.mark.asyncio
async def test_slider_fallback_window_failure():
    parent = FakeParent(lambda message: {"result": "error", "errorCode": METHOD_NOT_SUPPORTED_ON_DEVICE})
    slider = Slider(connect(parent), open_window=lambda url: False)

    with pytest.raises(TransportError) as exc_info:
        await slider.open_path("/crm/deal/details/10/")

    assert exc_info.value.error_code == "FRAME_WINDOW_OPEN_FAILED"


@pytest.mark.asyncio
async def test_slider_other_errors_raise():
    parent = FakeParent(lambda message: {"result": "error", "errorCode": "ACCESS_DENIED"})
    slider = Slider(connect(parent))

    with pytest.raises(ApiError) as exc_info:
        await slider.open_path("/crm/deal/details/10/")

    assert exc_info.value.error_code == "ACCESS_DENIED"
