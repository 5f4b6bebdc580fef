"""B24Client: one object per portal connection.

Owns the transport, the rate limiter and the dispatcher; batch and list
helpers share them, so every request of a client instance goes through the
same limiter and nothing is shared between instances.

Usage:
    async with B24Client.from_webhook("https://portal.bitrix24.com/rest/1/secret/") as b24:
        envelope = await b24.call_method("crm.item.list", {"entityTypeId": 2})
        if envelope.is_success:
            ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from b24sdk.conf.restriction_config import RestrictionPolicy, get_restriction_policy
from b24sdk.core.errors import ConfigurationError, SdkError
from b24sdk.core.models import ApiVersion
from b24sdk.core.rate_limiter import RateLimiter
from b24sdk.integrations.rest.batch import MAX_BATCH_COMMANDS, BatchEngine
from b24sdk.integrations.rest.dispatcher import CallDispatcher
from b24sdk.integrations.rest.list_iterator import DEFAULT_PAGE_SIZE, ListIterator
from b24sdk.integrations.rest.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping, Sequence

    from b24sdk.conf.config import Settings
    from b24sdk.core.result import ResultEnvelope
    from b24sdk.integrations.rest.transport import HttpTransport

logger = logging.getLogger(__name__)

HEALTH_CHECK_METHOD = "server.time"


class B24Client:
    """REST client for one portal.

    Args:
        base_url: Webhook base URL (``.../rest/<user>/<secret>/``)
        transport: Injected HTTP transport; an ``HttpxTransport`` is created when omitted
        policy: Restriction policy or preset name
        version: Default API version
        max_batch_commands: Commands per physical batch request
        page_size: Page size used by list helpers
        request_timeout: Timeout of the default transport, seconds
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: HttpTransport | None = None,
        policy: RestrictionPolicy | str = "default",
        version: ApiVersion | str = ApiVersion.V2,
        max_batch_commands: int = MAX_BATCH_COMMANDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        request_timeout: float = 30.0,
        limiter: RateLimiter | None = None,
    ):
        if not base_url:
            raise ConfigurationError(
                error_code="WEBHOOK_NOT_CONFIGURED",
                message="B24 webhook URL is empty",
            )
        if isinstance(policy, str):
            policy = get_restriction_policy(policy)

        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.policy = policy
        self._owns_transport = transport is None
        self.transport = transport or HttpxTransport(timeout=request_timeout)
        self.limiter = limiter or RateLimiter(policy)
        self.dispatcher = CallDispatcher(self.base_url, self.transport, self.limiter, version=version)
        self.batch = BatchEngine(self.dispatcher, max_batch_commands=max_batch_commands)
        self.lists = ListIterator(self.dispatcher, page_size=page_size)

    @classmethod
    def from_webhook(cls, webhook_url: str, **kwargs: Any) -> B24Client:
        return cls(webhook_url, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> B24Client:
        """Build a client from environment configuration."""
        if settings is None:
            from b24sdk.conf.config import get_settings

            settings = get_settings()
        options: dict[str, Any] = {
            "policy": settings.B24_RESTRICTION_PRESET,
            "version": settings.B24_API_VERSION,
            "max_batch_commands": settings.B24_MAX_BATCH_COMMANDS,
            "page_size": settings.B24_LIST_PAGE_SIZE,
            "request_timeout": settings.B24_REQUEST_TIMEOUT,
        }
        options.update(kwargs)
        return cls(settings.B24_WEBHOOK_URL.get_secret_value(), **options)

    async def __aenter__(self) -> B24Client:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_transport and isinstance(self.transport, HttpxTransport):
            await self.transport.aclose()

    @property
    def version(self) -> ApiVersion:
        return self.dispatcher.version

    # -------------------------------------------------------------------------
    # Single calls
    # -------------------------------------------------------------------------

    async def call_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        start: int | None = None,
        **kwargs: Any,
    ) -> ResultEnvelope:
        return await self.dispatcher.call_method(method, params, start, **kwargs)

    async def call_v2(self, method: str, params: dict[str, Any] | None = None, start: int | None = None, **kwargs: Any) -> ResultEnvelope:
        return await self.dispatcher.call_v2(method, params, start, **kwargs)

    async def call_v3(self, method: str, params: dict[str, Any] | None = None, start: int | None = None, **kwargs: Any) -> ResultEnvelope:
        return await self.dispatcher.call_v3(method, params, start, **kwargs)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def call_batch(
        self,
        commands: Mapping[str, Any] | Sequence[Any],
        is_halt_on_error: bool = True,
        return_ajax_result: bool = False,
        **kwargs: Any,
    ) -> ResultEnvelope:
        return await self.batch.call_batch(
            commands,
            is_halt_on_error=is_halt_on_error,
            return_ajax_result=return_ajax_result,
            **kwargs,
        )

    async def call_batch_by_chunk(
        self,
        commands: Sequence[Any],
        is_halt_on_error: bool = False,
        **kwargs: Any,
    ) -> ResultEnvelope:
        return await self.batch.call_batch_by_chunk(commands, is_halt_on_error, **kwargs)

    # -------------------------------------------------------------------------
    # Lists
    # -------------------------------------------------------------------------

    async def call_fast_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        id_key: str | None = None,
        custom_key_for_result: str | None = None,
        **kwargs: Any,
    ) -> ResultEnvelope:
        return await self.lists.call_fast_list_method(method, params, id_key, custom_key_for_result, **kwargs)

    def fetch_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        id_key: str | None = None,
        custom_key_for_result: str | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[list[Any]]:
        return self.lists.fetch_list_method(method, params, id_key, custom_key_for_result, **kwargs)

    async def call_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        progress: Callable[[int], Any] | None = None,
        custom_key_for_result: str | None = None,
        **kwargs: Any,
    ) -> ResultEnvelope:
        return await self.lists.call_list_method(method, params, progress, custom_key_for_result, **kwargs)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health_check(self) -> bool:
        """Check if the portal answers REST calls.

        Returns:
            True if ``server.time`` succeeds, False otherwise
        """
        try:
            envelope = await self.call_method(HEALTH_CHECK_METHOD, timeout=10.0)
        except SdkError as e:
            logger.warning("[B24:REST] health check failed: %s", e)
            return False
        return envelope.is_success

    async def ping(self) -> float:
        """Round-trip time of ``server.time`` in milliseconds, -1 on failure."""
        started = time.perf_counter()
        try:
            envelope = await self.call_method(HEALTH_CHECK_METHOD, timeout=10.0)
        except (SdkError, asyncio.TimeoutError) as e:
            logger.warning("[B24:REST] ping failed: %s", e)
            return -1.0
        if not envelope.is_success:
            return -1.0
        return round((time.perf_counter() - started) * 1000, 1)

    def get_stats(self) -> dict[str, Any]:
        return self.limiter.get_stats()
