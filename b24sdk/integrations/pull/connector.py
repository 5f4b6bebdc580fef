"""Transports for the pull channel.

A connector is the injected "bidirectional byte channel": the pull client
opens it, iterates ``frames()`` until the channel drops and pushes outbound
frames with ``send()``. Connectors never reconnect on their own.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from b24sdk.core.errors import TransportError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

Frame = bytes | str

# Close codes understood by the push server
NORMAL_CLOSURE = 1000
SERVER_DIE = 1001
CONFIG_REPLACED = 3000
CHANNEL_EXPIRED = 3001
SERVER_RESTARTED = 3002
CONFIG_EXPIRED = 3003
MANUAL = 3004

LONG_POLLING_TIMEOUT = 60.0
EXPIRES_LAST_MESSAGE = "Thu, 01 Jan 1973 11:11:01 GMT"


def build_channel_url(
    base_url: str,
    channel_ids: list[str],
    *,
    binary: bool = True,
    json_rpc: bool = False,
    mid: str | None = None,
) -> str:
    """Connection URL with ``CHANNEL_ID``, protocol flag and resume parameters."""
    parts = urlsplit(base_url)
    params: dict[str, str] = {"CHANNEL_ID": "/".join(channel_ids)}
    if json_rpc:
        params["jsonRpc"] = "true"
    elif binary:
        params["binaryMode"] = "true"
    if mid:
        params["mid"] = mid
    query = "&".join(q for q in (parts.query, urlencode(params, safe="/")) if q)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def with_query_param(url: str, name: str, value: str) -> str:
    """``url`` with ``name`` set to ``value``, replacing an earlier value."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != name]
    query.append((name, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query, safe="/"), parts.fragment))


class Connector(ABC):
    """Bidirectional frame channel.

    ``last_message_id`` is the resume point: once set, every connection URL
    carries it as ``mid`` so the server replays what was missed.
    """

    def __init__(self, url: str | Callable[[], str]):
        self._url = url
        self.last_message_id: str | None = None

    @property
    def url(self) -> str:
        url = self._url() if callable(self._url) else self._url
        if self.last_message_id:
            url = with_query_param(url, "mid", self.last_message_id)
        return url

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def open(self) -> None:
        """Open the channel; raises ``TransportError`` when it cannot."""

    @abstractmethod
    def frames(self) -> AsyncIterator[Frame]:
        """Inbound frames; ends on normal close, raises ``TransportError`` on drop."""

    @abstractmethod
    async def send(self, frame: Frame) -> None: ...

    @abstractmethod
    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


class WebSocketConnector(Connector):
    """Pull channel over a websocket (``websockets`` client)."""

    def __init__(self, url: str | Callable[[], str], *, open_timeout: float = 10.0, ping_interval: float | None = 20.0):
        super().__init__(url)
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self._ws = None
        self.close_code: int | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def open(self) -> None:
        url = self.url
        try:
            self._ws = await websockets.connect(
                url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._ws = None
            raise TransportError(
                error_code="PULL_CONNECT_FAILED",
                message=f"Websocket connect failed: {e}",
                context={"url": url},
            ) from e
        logger.info("[B24:PULL] websocket opened")

    async def frames(self) -> AsyncIterator[Frame]:
        ws = self._ws
        if ws is None:
            raise TransportError(error_code="PULL_NOT_CONNECTED", message="Websocket is not open")
        try:
            async for message in ws:
                yield message
        except ConnectionClosedOK:
            return
        except WebSocketException as e:
            raise TransportError(
                error_code="PULL_CONNECTION_LOST",
                message=f"Websocket closed: {e}",
            ) from e
        finally:
            self.close_code = ws.close_code
            self._ws = None

    async def send(self, frame: Frame) -> None:
        if self._ws is None:
            raise TransportError(error_code="PULL_NOT_CONNECTED", message="Websocket is not open")
        try:
            await self._ws.send(frame)
        except WebSocketException as e:
            raise TransportError(error_code="PULL_SEND_FAILED", message=str(e)) from e

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close(code, reason)


class LongPollingConnector(Connector):
    """Pull channel over repeated long GET requests (``httpx``).

    Outbound frames are POSTed to ``publish_url``.
    """

    def __init__(
        self,
        url: str | Callable[[], str],
        *,
        publish_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = LONG_POLLING_TIMEOUT,
    ):
        super().__init__(url)
        self.publish_url = publish_url
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client
        self._active = False

    @property
    def connected(self) -> bool:
        return self._active

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout + 5.0, connect=10.0))
        self._active = True

    async def frames(self) -> AsyncIterator[Frame]:
        while self._active:
            try:
                response = await self._client.get(self.url)
            except httpx.TimeoutException:
                continue
            except httpx.RequestError as e:
                self._active = False
                raise TransportError(
                    error_code="PULL_CONNECTION_LOST",
                    message=f"Long polling request failed: {e}",
                ) from e

            if response.status_code == 200:
                content_type = response.headers.get("content-type", "")
                if "text" in content_type or "json" in content_type:
                    if response.text:
                        yield response.text
                elif response.content:
                    yield response.content
            elif response.status_code == 304:
                if response.headers.get("expires") == EXPIRES_LAST_MESSAGE:
                    self.last_message_id = response.headers.get("last-message-id") or self.last_message_id
            else:
                self._active = False
                raise TransportError(
                    error_code="PULL_CONNECTION_LOST",
                    message="Could not connect to the server",
                    status=response.status_code,
                )

    async def send(self, frame: Frame) -> None:
        if not self.publish_url:
            raise TransportError(error_code="PULL_NO_PUBLISH_PATH", message="Publication path is empty")
        if self._client is None:
            raise TransportError(error_code="PULL_NOT_CONNECTED", message="Long polling is not open")
        try:
            response = await self._client.post(self.publish_url, content=frame)
        except httpx.RequestError as e:
            raise TransportError(error_code="PULL_SEND_FAILED", message=str(e)) from e
        if response.status_code >= 400:
            raise TransportError(
                error_code="PULL_SEND_FAILED",
                message=f"Publish rejected with HTTP {response.status_code}",
                status=response.status_code,
            )

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self._active = False
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
