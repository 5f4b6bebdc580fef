"""REST API version strategies.

v2 and v3 share dispatch semantics; they differ in endpoint prefix, error
shape, batch body layout and how a list page is filtered and limited.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from b24sdk.core.errors import ConfigurationError, ErrorMessage
from b24sdk.core.models import ApiVersion, Command, PayloadTime
from b24sdk.integrations.rest.query import build_command_row

REST_PREFIX = "/rest/"
REST_V3_PREFIX = "/rest/api/"

# v2 list methods ignore any requested limit
V2_PAGE_SIZE = 50


def parse_error_payload(payload: Any) -> tuple[ErrorMessage, ...]:
    """Extract structured errors from a response body or a batch ``result_error`` item.

    Handles ``{"error": "CODE", "error_description": "..."}`` (v2),
    ``{"error": {"code", "message", "validation"}}`` (v3) and bare strings.
    """
    if payload is None:
        return ()
    if isinstance(payload, str):
        return (ErrorMessage(code=payload, message=""),)
    if not isinstance(payload, dict):
        return (ErrorMessage(code="UNKNOWN_ERROR", message=str(payload)),)

    error = payload.get("error", payload)
    if isinstance(error, dict):
        validation = error.get("validation") or ()
        return (
            ErrorMessage(
                code=str(error.get("code") or "UNKNOWN_ERROR"),
                message=str(error.get("message") or ""),
                validation=tuple(v for v in validation if isinstance(v, dict)),
            ),
        )
    return (
        ErrorMessage(
            code=str(error or "UNKNOWN_ERROR"),
            message=str(payload.get("error_description") or ""),
        ),
    )


def _by_key(container: Any, key: str | int) -> Any:
    if isinstance(container, list):
        if isinstance(key, int) and 0 <= key < len(container):
            return container[key]
        return None
    if isinstance(container, dict):
        if key in container:
            return container[key]
        return container.get(str(key))
    return None


@dataclass(frozen=True)
class BatchItem:
    """One command's slice of a batch response."""

    present: bool
    data: Any = None
    errors: tuple[ErrorMessage, ...] = ()
    total: int | None = None
    next: int | str | None = None
    time: PayloadTime | None = None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class VersionStrategy(ABC):
    """Wire-format differences between REST generations."""

    version: ApiVersion
    prefix: str
    default_id_key: str

    def method_url(self, base_url: str, method: str) -> str:
        """Absolute URL of ``method`` for a webhook base like ``https://x/rest/1/secret/``."""
        base = base_url if base_url.endswith("/") else base_url + "/"
        if self.prefix != REST_PREFIX and REST_PREFIX in base and self.prefix not in base:
            base = base.replace(REST_PREFIX, self.prefix, 1)
        return f"{base}{quote(method, safe='.:')}"

    @abstractmethod
    def build_batch_body(
        self,
        entries: list[tuple[str | int, Command]],
        *,
        named: bool,
        halt: bool,
    ) -> Any:
        """Body of one physical ``batch`` request."""

    @abstractmethod
    def read_batch_item(self, result: Any, key: str | int, time: PayloadTime | None) -> BatchItem:
        """Slice the ``result`` part of a batch response for one command."""

    @abstractmethod
    def cursor_params(
        self,
        params: dict[str, Any],
        id_key: str,
        last_id: int,
        page_size: int,
    ) -> dict[str, Any]:
        """Params for the id-cursor page following ``last_id``."""

    def server_page_size(self, page_size: int) -> int:
        """Items a full page holds when ``page_size`` is requested."""
        return page_size


class V2Strategy(VersionStrategy):
    version = ApiVersion.V2
    prefix = REST_PREFIX
    default_id_key = "ID"

    def build_batch_body(self, entries, *, named, halt):
        if named:
            cmd: dict[str, str] | list[str] = {
                str(key): build_command_row(command.method, command.params) for key, command in entries
            }
        else:
            cmd = [build_command_row(command.method, command.params) for _, command in entries]
        return {"halt": 1 if halt else 0, "cmd": cmd}

    def read_batch_item(self, result, key, time):
        if not isinstance(result, dict):
            return BatchItem(present=False)

        data = _by_key(result.get("result"), key)
        error = _by_key(result.get("result_error"), key)
        if data is None and error is None:
            return BatchItem(present=False)

        item_time = PayloadTime.from_payload(_by_key(result.get("result_time"), key))
        return BatchItem(
            present=True,
            data=data,
            errors=parse_error_payload(error) if error is not None else (),
            total=_as_int(_by_key(result.get("result_total"), key)),
            next=_by_key(result.get("result_next"), key),
            time=item_time or time,
        )

    def server_page_size(self, page_size):
        return V2_PAGE_SIZE

    def cursor_params(self, params, id_key, last_id, page_size):
        out = dict(params)
        out["order"] = {id_key: "ASC"}
        flt = dict(out.get("filter") or {})
        flt[f">{id_key}"] = last_id
        out["filter"] = flt
        out["start"] = -1
        return out


class V3Strategy(VersionStrategy):
    version = ApiVersion.V3
    prefix = REST_V3_PREFIX
    default_id_key = "id"

    def build_batch_body(self, entries, *, named, halt):
        body = []
        for key, command in entries:
            row: dict[str, Any] = {
                "method": command.method,
                "query": dict(command.params),
                "parallel": not halt,
            }
            if named:
                row["as"] = str(key)
            body.append(row)
        return body

    def read_batch_item(self, result, key, time):
        data = _by_key(result, key)
        if data is None:
            return BatchItem(present=False)
        if isinstance(data, dict) and "error" in data and len(data) <= 2:
            return BatchItem(present=True, errors=parse_error_payload(data), time=time)
        return BatchItem(present=True, data=data, time=time)

    def cursor_params(self, params, id_key, last_id, page_size):
        out = dict(params)
        out["order"] = {id_key: "ASC"}
        base_filter = params.get("filter") or []
        if not isinstance(base_filter, (list, tuple)):
            raise ConfigurationError(
                error_code="INVALID_LIST_FILTER",
                message="v3 list filter must be a list of [field, operator, value] conditions",
                context={"filter": base_filter},
            )
        out["filter"] = [*base_filter, [id_key, ">", last_id]]
        out["pagination"] = {"page": 0, "limit": page_size}
        return out


STRATEGIES: dict[ApiVersion, VersionStrategy] = {
    ApiVersion.V2: V2Strategy(),
    ApiVersion.V3: V3Strategy(),
}


def get_strategy(version: ApiVersion | str) -> VersionStrategy:
    return STRATEGIES[ApiVersion(version)]
