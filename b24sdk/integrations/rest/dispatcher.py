"""Call dispatcher: one logical REST call -> one rate-limited HTTP request.

API rejections come back as a failed ``ResultEnvelope``; only failures where
the request never produced a usable answer raise (``TransportError``,
``RateLimitTimeout``, ``Cancelled``).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import Cancelled, ErrorMessage, SdkError, TransportError
from b24sdk.core.logging import log_event, log_with_root_cause, safe_preview
from b24sdk.core.models import ApiVersion, Command, PayloadTime
from b24sdk.core.result import ResultEnvelope
from b24sdk.integrations.rest.transport import HttpRequest, HttpResponse
from b24sdk.integrations.rest.versions import get_strategy, parse_error_payload

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from b24sdk.core.rate_limiter import RateLimiter
    from b24sdk.integrations.rest.transport import HttpTransport

logger = logging.getLogger(__name__)

SDK_VERSION = "0.4.0"
SDK_TYPE = "b24sdk-python"

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_PARAM = "bx24_request_id"
SDK_VERSION_PARAM = "bx24_sdk_ver"
SDK_TYPE_PARAM = "bx24_sdk_type"

# Sentinel for ``start``: skip total counting on the server side.
START_NO_COUNT = -1

LIMIT_ERROR_CODES = frozenset({"QUERY_LIMIT_EXCEEDED"})
LIMIT_STATUSES = frozenset({429, 503})


def new_request_id() -> str:
    return uuid.uuid4().hex


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CallDispatcher:
    """Issues single REST calls through a shared limiter and transport.

    Args:
        base_url: Webhook base, e.g. ``https://portal.bitrix24.com/rest/1/<secret>/``
        transport: Anything with ``async send(HttpRequest) -> HttpResponse``
        limiter: Rate limiter owned by the client instance
        version: Default API version for ``call_method``
    """

    def __init__(
        self,
        base_url: str,
        transport: HttpTransport,
        limiter: RateLimiter,
        *,
        version: ApiVersion | str = ApiVersion.V2,
    ):
        self.base_url = base_url
        self.transport = transport
        self.limiter = limiter
        self.version = ApiVersion(version)

    async def call_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        start: int | None = None,
        *,
        version: ApiVersion | str | None = None,
        request_id: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResultEnvelope:
        """Call ``method`` once.

        Args:
            method: REST method name, e.g. ``crm.item.list``
            params: Method parameters
            start: Page offset; ``-1`` disables total counting, ``None`` leaves it out
            version: Override the dispatcher's default API version
            request_id: Correlation id, generated when omitted
            timeout: Deadline for permit wait plus request, seconds
            cancel_event: Set it to abort the call
        """
        command = Command(method=method, params=params or {})
        body = dict(command.params)
        if start is not None:
            body["start"] = start
        return await self.call_raw(
            command.method,
            body,
            version=version,
            request_id=request_id,
            timeout=timeout,
            cancel_event=cancel_event,
        )

    async def call_v2(self, method: str, params: dict[str, Any] | None = None, start: int | None = None, **kwargs: Any) -> ResultEnvelope:
        return await self.call_method(method, params, start, version=ApiVersion.V2, **kwargs)

    async def call_v3(self, method: str, params: dict[str, Any] | None = None, start: int | None = None, **kwargs: Any) -> ResultEnvelope:
        return await self.call_method(method, params, start, version=ApiVersion.V3, **kwargs)

    async def call_raw(
        self,
        method: str,
        body: Any,
        *,
        version: ApiVersion | str | None = None,
        request_id: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResultEnvelope:
        """Send a prepared body (dict or list, e.g. a batch body) for ``method``."""
        api_version = ApiVersion(version) if version is not None else self.version
        strategy = get_strategy(api_version)
        request_id = request_id or new_request_id()

        request = HttpRequest(
            url=strategy.method_url(self.base_url, method),
            body=body,
            query={
                REQUEST_ID_PARAM: request_id,
                SDK_VERSION_PARAM: SDK_VERSION,
                SDK_TYPE_PARAM: SDK_TYPE,
            },
            headers={REQUEST_ID_HEADER: request_id},
        )
        limiter_params = body if isinstance(body, dict) else {"cmd": body}

        self._check_cancelled(cancel_event, method, request_id)

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        started = time.perf_counter()

        async def acquire_and_send() -> HttpResponse:
            async with self.limiter.acquire(method, timeout=timeout, params=limiter_params):
                if deadline is None:
                    return await self._send_guarded(request, method, request_id)
                remaining = deadline - loop.time()
                return await self._race(
                    self._send_guarded(request, method, request_id), remaining, None, method, request_id
                )

        if cancel_event is None:
            response = await acquire_and_send()
        else:
            response = await self._race(acquire_and_send(), None, cancel_event, method, request_id)

        envelope = self._to_envelope(response, method, body, request_id, api_version)
        duration_ms = round((time.perf_counter() - started) * 1000, 1)

        if envelope.is_success:
            await self.limiter.update_stats(method, envelope.time)
            log_event(
                logger,
                event="rest_call_done",
                level="debug",
                api_method=method,
                request_id=request_id,
                duration_ms=duration_ms,
                status_code=envelope.status,
            )
        else:
            if envelope.status in LIMIT_STATUSES or any(e.code in LIMIT_ERROR_CODES for e in envelope.errors):
                pause = await self.limiter.handle_exceeded()
                log_event(
                    logger,
                    event="rest_limit_exceeded",
                    level="warning",
                    api_method=method,
                    request_id=request_id,
                    pause_s=round(pause, 2),
                )
            log_event(
                logger,
                event="rest_call_api_error",
                level="info",
                api_method=method,
                request_id=request_id,
                status_code=envelope.status,
                errors="; ".join(envelope.error_messages()),
            )

        return envelope.with_fetcher(self.next_fetcher(api_version))

    def next_fetcher(self, version: ApiVersion):
        """Callable a ResultEnvelope uses to request its next page."""

        async def fetch(method: str, params: dict[str, Any], start: int) -> ResultEnvelope:
            return await self.call_method(method, params, start, version=version)

        return fetch

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None, method: str, request_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(
                error_code="CANCELLED",
                message=f"Call {method} cancelled before dispatch",
                context={"method": method, "request_id": request_id},
            )

    async def _race(
        self,
        work: Coroutine[Any, Any, HttpResponse],
        timeout: float | None,
        cancel_event: asyncio.Event | None,
        method: str,
        request_id: str,
    ) -> HttpResponse:
        """Run ``work`` until it finishes, ``timeout`` passes or ``cancel_event`` is set."""
        work_task = asyncio.ensure_future(work)
        waiters: set[asyncio.Future[Any]] = {work_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(timeout, 0.0) if timeout is not None else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            if not work_task.done():
                work_task.cancel()

        if work_task in done:
            return work_task.result()

        # Let the aborted work unwind so its permit is back before we report.
        await asyncio.wait({work_task})

        reason = "cancel event" if cancel_task is not None and cancel_task in done else "deadline"
        raise Cancelled(
            error_code="CANCELLED",
            message=f"Call {method} aborted in flight by {reason}",
            context={"method": method, "request_id": request_id},
        )

    async def _send_guarded(self, request: HttpRequest, method: str, request_id: str) -> HttpResponse:
        try:
            return await self.transport.send(request)
        except SdkError as e:
            log_with_root_cause(logger, "error", f"[B24:REST] {method} failed", error=e, request_id=request_id)
            raise
        except Exception as e:
            error = TransportError(
                error_code="NETWORK_ERROR",
                message=f"{type(e).__name__}: {e}",
                context={"method": method, "request_id": request_id},
            )
            log_with_root_cause(logger, "error", f"[B24:REST] {method} failed", error=error, request_id=request_id)
            raise error from e

    def _to_envelope(
        self,
        response: HttpResponse,
        method: str,
        body: Any,
        request_id: str,
        version: ApiVersion,
    ) -> ResultEnvelope:
        params = body if isinstance(body, dict) else {"cmd": body}
        common = {"status": response.status, "method": method, "params": params, "request_id": request_id}

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(
                error_code=f"HTTP_{response.status}" if response.status >= 400 else "ERROR_UNEXPECTED_ANSWER",
                message=f"Non-JSON answer for {method}: {safe_preview(response.text, 200)}",
                status=response.status,
                context={"method": method, "request_id": request_id, "version": version.value},
            ) from e

        if not isinstance(payload, dict):
            raise TransportError(
                error_code="ERROR_UNEXPECTED_ANSWER",
                message=f"Unexpected answer shape for {method}: {type(payload).__name__}",
                status=response.status,
                context={"method": method, "request_id": request_id},
            )

        payload_time = PayloadTime.from_payload(payload.get("time"))

        if "error" in payload or response.status >= 400:
            errors = parse_error_payload(payload) if "error" in payload else (
                ErrorMessage(code=f"HTTP_{response.status}", message=safe_preview(response.text, 200)),
            )
            return ResultEnvelope.fail(errors, time=payload_time, **common)

        return ResultEnvelope.ok(
            payload.get("result"),
            time=payload_time,
            total=_as_int(payload.get("total")),
            next=payload.get("next"),
            **common,
        )
