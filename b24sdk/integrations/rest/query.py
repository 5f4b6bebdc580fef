"""PHP-style query strings for batch command rows.

The portal parses ``cmd`` rows with PHP rules, so nested structures are
flattened with bracket keys::

    {"filter": {">ID": 0}, "select": ["ID", "TITLE"]}
    -> filter%5B%3EID%5D=0&select%5B0%5D=ID&select%5B1%5D=TITLE
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _flatten(prefix: str, value: Any, out: list[tuple[str, str]]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}[{key}]", item, out)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _flatten(f"{prefix}[{index}]", item, out)
    else:
        out.append((prefix, _scalar(value)))


def http_build_query(params: dict[str, Any] | None) -> str:
    """Serialize params the way the portal's batch parser expects."""
    if not params:
        return ""
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        _flatten(str(key), value, pairs)
    return "&".join(f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in pairs)


def build_command_row(method: str, params: dict[str, Any] | None) -> str:
    """``method?query`` row used inside a v2 batch ``cmd``."""
    return f"{method}?{http_build_query(params)}"
