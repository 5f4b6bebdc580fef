"""Typed contracts shared by the REST runtime.

- Command: one ``method + params`` call, immutable once built
- PayloadTime: the ``time`` block every REST response carries
- ApiVersion: which REST generation a call targets
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from b24sdk.core.errors import ConfigurationError


class ApiVersion(str, Enum):
    """REST API generation."""

    V2 = "v2"
    V3 = "v3"


class Command(BaseModel):
    """Single REST call that can be sent alone or inside a batch."""

    model_config = ConfigDict(frozen=True)

    method: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("method cannot be blank")
        return v

    @field_validator("params", mode="before")
    @classmethod
    def copy_params(cls, v: Any) -> dict[str, Any]:
        # Detached from the caller's dict so later mutations do not leak into a batch.
        if v is None:
            return {}
        return copy.deepcopy(dict(v))

    @classmethod
    def coerce(cls, value: Any) -> Command:
        """Build a Command from a Command, a ``(method, params)`` pair or a mapping."""
        if isinstance(value, Command):
            return value
        if isinstance(value, (tuple, list)) and 1 <= len(value) <= 2:
            method = value[0]
            params = value[1] if len(value) == 2 else {}
            return cls(method=method, params=params or {})
        if isinstance(value, dict) and "method" in value:
            return cls(method=value["method"], params=value.get("params") or {})
        raise ConfigurationError(
            error_code="INVALID_COMMAND",
            message=f"Cannot build a command from {type(value).__name__}",
            context={"value": repr(value)[:200]},
        )


class PayloadTime(BaseModel):
    """Timing block of a REST response.

    ``operating`` is the method's operating time (seconds) spent inside the
    current window; ``operating_reset_at`` is the unix time the window resets.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    start: float | None = None
    finish: float | None = None
    duration: float | None = None
    processing: float | None = None
    date_start: str | None = None
    date_finish: str | None = None
    operating: float | None = None
    operating_reset_at: float | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> PayloadTime | None:
        if not isinstance(raw, dict):
            return None
        return cls.model_validate(raw)
