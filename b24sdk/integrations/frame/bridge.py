"""Bridge to the hosting portal frame.

An application page embedded in the portal talks to its parent window with
one-shot messages: ``command:params:callbackId:appSid`` goes up, and the
parent answers ``callbackId:jsonArgs``. The runtime that actually posts and
receives window messages is injected (``post`` callable and ``receive()``),
so the bridge itself is plain asyncio.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
import webbrowser
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit

from b24sdk.core.errors import ApiError, ConfigurationError, TransportError
from b24sdk.core.logging import safe_preview

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_SAFELY_TIME = 0.9
DEFAULT_SLIDER_WIDTH = 1640
METHOD_NOT_SUPPORTED_ON_DEVICE = "METHOD_NOT_SUPPORTED_ON_DEVICE"


class ParentCommand(str, Enum):
    GET_INIT_DATA = "getInitData"
    SET_INSTALL_FINISH = "setInstallFinish"
    RESIZE_WINDOW = "resizeWindow"
    RELOAD_WINDOW = "reloadWindow"
    SET_TITLE = "setTitle"
    SET_SCROLL = "setScroll"
    OPEN_APPLICATION = "openApplication"
    CLOSE_APPLICATION = "closeApplication"
    OPEN_PATH = "openPath"


class MessageBridge:
    """Request/response calls over the parent-frame message channel.

    Args:
        post: Delivers one outgoing message (string or dict) to the parent
        app_sid: Application session id appended to every command
        target_origin: Only answers from this origin are accepted
    """

    def __init__(self, post: Callable[[Any], Any], *, app_sid: str = "", target_origin: str | None = None):
        self._post = post
        self.app_sid = app_sid
        self.target_origin = target_origin
        self._pending: dict[str, asyncio.Future] = {}
        self._callbacks: dict[str, Callable[[Any], Any]] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _encode(
        self,
        command: str,
        params: dict[str, Any] | None,
        key: str,
        *,
        is_raw_value: bool,
        request_id: str | None,
    ) -> str | dict[str, Any]:
        if ":" in command:
            return {
                "method": command,
                "params": params or "",
                "callback": key,
                "appSid": self.app_sid,
                "requestId": request_id,
            }

        payload: Any = params or None
        if payload and is_raw_value:
            payload = payload.get("value", payload)
        elif payload:
            payload = json.dumps(payload, ensure_ascii=False)
        parts = [str(p) for p in (payload or "", key, self.app_sid) if p]
        return ":".join([command, *parts])

    async def send(
        self,
        command: str | ParentCommand,
        params: dict[str, Any] | None = None,
        *,
        is_safely: bool = False,
        safely_time: float = DEFAULT_SAFELY_TIME,
        is_raw_value: bool = False,
        callback: Callable[[Any], Any] | None = None,
        request_id: str | None = None,
    ) -> Any:
        """Send a command to the parent and wait for its answer.

        With ``is_safely`` the call resolves to ``{"isSafely": True}`` if the
        parent stays silent for ``safely_time`` seconds. ``callback`` keeps
        receiving later answers for the same callback id.
        """
        command = command.value if isinstance(command, ParentCommand) else str(command)
        key = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        if callback is not None:
            self._callbacks[key] = callback

        message = self._encode(command, params, key, is_raw_value=is_raw_value, request_id=request_id)
        logger.debug("[B24:FRAME] send %s", safe_preview(message))
        try:
            result = self._post(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._pending.pop(key, None)
            self._callbacks.pop(key, None)
            raise

        if not is_safely:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=safely_time)
        except asyncio.TimeoutError:
            self._pending.pop(key, None)
            logger.warning("[B24:FRAME] action %s stop by timeout (%.1fs)", command, safely_time)
            return {"isSafely": True}

    def receive(self, data: str, origin: str | None = None) -> bool:
        """Handle one message from the parent window.

        Returns:
            True if it answered a pending call or a registered callback
        """
        if self.target_origin is not None and origin != self.target_origin:
            logger.debug("[B24:FRAME] ignoring message from %s", origin)
            return False
        if not data or not isinstance(data, str):
            return False

        key, _, raw_args = data.partition(":")
        args: Any = raw_args
        if raw_args:
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError:
                args = raw_args

        future = self._pending.pop(key, None)
        if future is not None:
            if not future.done():
                future.set_result(args)
            return True

        callback = self._callbacks.get(key)
        if callback is not None:
            callback(args)
            return True
        return False


class ParentCommands:
    """Commands to the parent window of an embedded application."""

    def __init__(self, bridge: MessageBridge):
        self.bridge = bridge

    async def get_init_data(self) -> Any:
        return await self.bridge.send(ParentCommand.GET_INIT_DATA)

    async def install_finish(self) -> Any:
        return await self.bridge.send(ParentCommand.SET_INSTALL_FINISH, is_safely=True)

    async def resize_window(self, width: int, height: int) -> Any:
        if width <= 0 or height <= 0:
            raise ConfigurationError(
                error_code="FRAME_WRONG_SIZE",
                message=f"Wrong width:number = {width} or height:number = {height}",
            )
        return await self.bridge.send(
            ParentCommand.RESIZE_WINDOW,
            {"width": width, "height": height},
            is_safely=True,
        )

    async def fit_window(self, height: int) -> Any:
        """Stretch the frame to full width and ``height`` (the content height)."""
        return await self.bridge.send(
            ParentCommand.RESIZE_WINDOW,
            {"width": "100%", "height": height},
            is_safely=True,
        )

    async def reload_window(self) -> Any:
        return await self.bridge.send(ParentCommand.RELOAD_WINDOW, {})

    async def set_title(self, title: str) -> Any:
        return await self.bridge.send(ParentCommand.SET_TITLE, {"title": str(title)})

    async def set_scroll(self, scroll: int) -> Any:
        return await self.bridge.send(ParentCommand.SET_SCROLL, {"scroll": int(scroll)}, is_safely=True)

    async def close_application(self) -> Any:
        return await self.bridge.send(ParentCommand.CLOSE_APPLICATION, {})

    async def open_application(self, params: dict[str, Any] | None = None) -> Any:
        return await self.bridge.send(ParentCommand.OPEN_APPLICATION, params or {})


def _base_path_for_width(width: int) -> str:
    # The portal picks the slider width from the page the path starts at.
    if width <= 0:
        return "/crm/deal/../.."
    if 1200 < width <= 1640:
        return "/crm/type/0/details/0/../../../../.."
    if 950 < width <= 1200:
        return "/company/personal/user/0/groups/create/../../../../../.."
    if 900 < width <= 950:
        return "/crm/company/requisite/0/../../../.."
    if width <= 900:
        return "/workgroups/group/0/card/../../../.."
    return "/crm/deal/../.."


class Slider:
    """Opens portal pages in the side slider.

    Args:
        bridge: Message bridge to the parent window
        open_window: Opens a URL in a new window when the device has no slider
    """

    def __init__(self, bridge: MessageBridge, *, open_window: Callable[[str], Any] = webbrowser.open):
        self.bridge = bridge
        self._open_window = open_window

    async def open_path(self, url: str, width: int = DEFAULT_SLIDER_WIDTH) -> dict[str, bool]:
        """Open ``url`` in a slider and wait until it closes.

        Returns:
            ``{"isOpenAtNewWindow": bool, "isClose": bool}``

        Raises:
            ApiError: the parent rejected the path
            TransportError: fallback window could not be opened
        """
        parts = urlsplit(url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in ("IFRAME", "IFRAME_TYPE")]
        query += [("IFRAME", "Y"), ("IFRAME_TYPE", "SIDE_SLIDER")]
        path = f"{_base_path_for_width(width)}{parts.path or '/'}?{urlencode(query)}"

        response = await self.bridge.send(ParentCommand.OPEN_PATH, {"path": path})
        if not isinstance(response, dict):
            return {"isOpenAtNewWindow": False, "isClose": False}

        if response.get("result") == "error":
            error_code = str(response.get("errorCode") or "UNKNOWN_ERROR")
            if error_code != METHOD_NOT_SUPPORTED_ON_DEVICE:
                raise ApiError(error_code=error_code, message=f"openPath failed: {error_code}")
            logger.info("[B24:FRAME] slider not supported on device, opening new window")
            opened = self._open_window(url)
            if inspect.isawaitable(opened):
                opened = await opened
            if not opened:
                raise TransportError(error_code="FRAME_WINDOW_OPEN_FAILED", message="Error open window")
            return {"isOpenAtNewWindow": True, "isClose": True}

        if response.get("result") == "close":
            return {"isOpenAtNewWindow": False, "isClose": True}
        return {"isOpenAtNewWindow": False, "isClose": False}
