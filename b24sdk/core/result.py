"""Result envelope returned by every REST call.

API-level rejections do not raise: the envelope is built with
``is_success=False`` and the structured messages in ``errors``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import ApiError, ErrorMessage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from b24sdk.core.models import PayloadTime

    NextFetcher = Callable[[str, dict[str, Any], int], Awaitable["ResultEnvelope"]]


@dataclass(frozen=True)
class ResultEnvelope:
    """Immutable wrapper over one REST response."""

    data: Any = None
    errors: tuple[ErrorMessage, ...] = ()
    time: PayloadTime | None = None
    total: int | None = None
    next: int | str | None = None
    status: int = 200
    method: str = ""
    params: dict[str, Any] = field(default_factory=dict, repr=False)
    request_id: str = ""
    _fetch_next: NextFetcher | None = field(default=None, repr=False, compare=False)

    @classmethod
    def ok(cls, data: Any, **kwargs: Any) -> ResultEnvelope:
        return cls(data=data, **kwargs)

    @classmethod
    def fail(cls, errors: list[ErrorMessage] | tuple[ErrorMessage, ...], **kwargs: Any) -> ResultEnvelope:
        return cls(errors=tuple(errors), **kwargs)

    @property
    def is_success(self) -> bool:
        return not self.errors

    @property
    def pagination(self) -> dict[str, Any]:
        return {"total": self.total, "next": self.next}

    def get_data(self) -> Any:
        return self.data

    def get_total(self) -> int:
        """Total item count reported by the server, 0 when counting was disabled."""
        return int(self.total or 0)

    def is_more(self) -> bool:
        """True when the server reported a numeric ``next`` offset."""
        if isinstance(self.next, bool):
            return False
        if isinstance(self.next, int):
            return True
        return isinstance(self.next, str) and self.next.isdigit()

    def error_messages(self) -> list[str]:
        return [str(error) for error in self.errors]

    def raise_for_error(self) -> ResultEnvelope:
        """Raise ``ApiError`` for a failed envelope, return self otherwise."""
        if not self.is_success:
            raise ApiError.from_messages(
                self.errors,
                status=self.status,
                context={"method": self.method, "request_id": self.request_id},
            )
        return self

    async def get_next(self) -> ResultEnvelope | None:
        """Fetch the following page as a new envelope; ``None`` when there is none.

        ``self`` is left untouched.
        """
        if not self.is_more() or self._fetch_next is None:
            return None
        return await self._fetch_next(self.method, dict(self.params), int(self.next))  # type: ignore[arg-type]

    def with_fetcher(self, fetcher: NextFetcher | None) -> ResultEnvelope:
        return replace(self, _fetch_next=fetcher)
