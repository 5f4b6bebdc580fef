"""List iteration over paginated REST methods.

Id-cursor mode (``call_fast_list_method`` / ``fetch_list_method``): every page
asks for ``id > last_seen_id`` sorted by id with total counting disabled, so
inserts and deletes on the remote side never shift the window.

Offset mode (``call_list_method``) follows the ``next`` value the server
returns; use it only for methods that cannot filter by id.

Exactly one page request is in flight at a time; nothing is prefetched.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import ApiError
from b24sdk.core.models import ApiVersion
from b24sdk.core.result import ResultEnvelope
from b24sdk.integrations.rest.versions import get_strategy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from b24sdk.integrations.rest.dispatcher import CallDispatcher

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


def extract_items(data: Any, custom_key_for_result: str | None = None) -> list[Any]:
    """Items of one list page, e.g. ``result`` or ``result["items"]``."""
    if custom_key_for_result:
        data = data.get(custom_key_for_result) if isinstance(data, dict) else None
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.values())
    return [data]


def _cursor_value(item: Any, id_key: str) -> int | None:
    if not isinstance(item, dict) or item.get(id_key) is None:
        return None
    try:
        return int(item[id_key])
    except (TypeError, ValueError):
        return None


class ListIterator:
    """Composes the dispatcher into whole-collection reads.

    Args:
        dispatcher: Dispatcher used for every page
        page_size: Page limit sent to v3 methods; v2 methods always page by 50
    """

    def __init__(self, dispatcher: CallDispatcher, *, page_size: int = DEFAULT_PAGE_SIZE):
        self.dispatcher = dispatcher
        self.page_size = page_size

    async def _pages(
        self,
        method: str,
        params: dict[str, Any] | None,
        id_key: str | None,
        custom_key_for_result: str | None,
        version: ApiVersion | None,
    ) -> AsyncIterator[tuple[ResultEnvelope, list[Any]]]:
        api_version = version or self.dispatcher.version
        strategy = get_strategy(api_version)
        id_key = id_key or strategy.default_id_key
        full_page = strategy.server_page_size(self.page_size)
        base_params = dict(params or {})
        last_id = 0
        page_no = 0

        while True:
            page_params = strategy.cursor_params(base_params, id_key, last_id, self.page_size)
            envelope = await self.dispatcher.call_method(method, page_params, version=api_version)
            page_no += 1
            if not envelope.is_success:
                yield envelope, []
                return

            items = extract_items(envelope.data, custom_key_for_result)
            if not items:
                return

            yield envelope, items

            if len(items) < full_page:
                return

            next_id = _cursor_value(items[-1], id_key)
            if next_id is None:
                logger.warning(
                    "[B24:REST] %s page %d: last item has no %r, stopping", method, page_no, id_key
                )
                return
            if next_id <= last_id:
                logger.warning(
                    "[B24:REST] %s page %d: cursor did not advance (%s <= %s), stopping",
                    method,
                    page_no,
                    next_id,
                    last_id,
                )
                return
            last_id = next_id

    async def fetch_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        id_key: str | None = None,
        custom_key_for_result: str | None = None,
        *,
        version: ApiVersion | str | None = None,
    ) -> AsyncIterator[list[Any]]:
        """Lazily yield pages (lists of items) in ascending id order.

        Raises:
            ApiError: the server rejected a page request
        """
        api_version = ApiVersion(version) if version is not None else None
        async for envelope, items in self._pages(method, params, id_key, custom_key_for_result, api_version):
            if not envelope.is_success:
                logger.error(
                    "[B24:REST] fetch_list_method %s failed: %s",
                    method,
                    "; ".join(envelope.error_messages()),
                )
                raise ApiError.from_messages(
                    envelope.errors,
                    status=envelope.status,
                    context={"method": method, "request_id": envelope.request_id},
                )
            yield items

    async def call_fast_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        id_key: str | None = None,
        custom_key_for_result: str | None = None,
        *,
        version: ApiVersion | str | None = None,
    ) -> ResultEnvelope:
        """Read the whole collection; ``data`` is the flat item list.

        A failed page ends the read: the envelope carries its errors and the
        items gathered before it.
        """
        api_version = ApiVersion(version) if version is not None else None
        collected: list[Any] = []
        last: ResultEnvelope | None = None
        async for envelope, items in self._pages(method, params, id_key, custom_key_for_result, api_version):
            last = envelope
            if not envelope.is_success:
                return ResultEnvelope.fail(
                    envelope.errors,
                    data=collected,
                    status=envelope.status,
                    method=method,
                    request_id=envelope.request_id,
                )
            collected.extend(items)

        return ResultEnvelope.ok(
            collected,
            time=last.time if last else None,
            total=len(collected),
            method=method,
            params=dict(params or {}),
        )

    async def call_list_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        progress: Callable[[int], Any] | None = None,
        custom_key_for_result: str | None = None,
        *,
        version: ApiVersion | str | None = None,
    ) -> ResultEnvelope:
        """Offset pagination following ``next``; ``data`` is the flat item list.

        ``progress`` receives a percentage (0..100) after every page.
        """
        if progress is not None:
            progress(0)

        envelope: ResultEnvelope | None = await self.dispatcher.call_method(
            method, dict(params or {}), 0, version=version
        )
        collected: list[Any] = []
        while envelope is not None:
            if not envelope.is_success:
                return ResultEnvelope.fail(
                    envelope.errors,
                    data=collected,
                    status=envelope.status,
                    method=method,
                    request_id=envelope.request_id,
                )
            collected.extend(extract_items(envelope.data, custom_key_for_result))
            if progress is not None:
                total = envelope.get_total()
                progress(min(100, round(100 * len(collected) / total)) if total > 0 else 100)
            envelope = await envelope.get_next()

        if progress is not None:
            progress(100)
        return ResultEnvelope.ok(collected, total=len(collected), method=method, params=dict(params or {}))
