"""HTTP transport used by the REST dispatcher.

The dispatcher only needs ``send(request) -> response``; ``HttpxTransport`` is
the default implementation, tests inject their own.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from b24sdk.core.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpRequest:
    """Wire request built by a version strategy."""

    url: str
    body: Any = None
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    http_method: str = "POST"


@dataclass(frozen=True)
class HttpResponse:
    """Raw HTTP answer handed back by a transport."""

    status: int
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    @classmethod
    def from_json(cls, status: int, payload: Any, headers: dict[str, str] | None = None) -> HttpResponse:
        return cls(
            status=status,
            content=json.dumps(payload).encode("utf-8"),
            headers=headers or {"content-type": "application/json"},
        )


@runtime_checkable
class HttpTransport(Protocol):
    async def send(self, request: HttpRequest) -> HttpResponse: ...


class HttpxTransport:
    """``HttpTransport`` over ``httpx.AsyncClient``.

    Usage:
        async with HttpxTransport(timeout=30) as transport:
            response = await transport.send(HttpRequest(url=...))
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        user_agent: str = "b24sdk-python",
    ):
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "User-Agent": user_agent,
            },
        )

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, request: HttpRequest) -> HttpResponse:
        try:
            response = await self._client.request(
                request.http_method,
                request.url,
                params=request.query or None,
                json=request.body,
                headers=request.headers or None,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                error_code="REQUEST_TIMEOUT",
                message=f"Request timed out: {e}",
                context={"url": request.url},
            ) from e
        except httpx.RequestError as e:
            raise TransportError(
                error_code="NETWORK_ERROR",
                message=f"Request failed: {type(e).__name__}: {e}",
                context={"url": request.url},
            ) from e

        return HttpResponse(
            status=response.status_code,
            content=response.content,
            headers=dict(response.headers),
        )
