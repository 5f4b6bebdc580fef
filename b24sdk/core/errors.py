"""Structured error system for the REST and pull runtimes.

Every failure that leaves the SDK as an exception is an ``SdkError``:
- Error code for automation (e.g., "QUERY_LIMIT_EXCEEDED", "NETWORK_ERROR")
- Human-readable message
- HTTP status when one is known
- Context (masked sensitive data, webhook secrets included)

Ordinary API rejections are NOT raised: they come back inside a
``ResultEnvelope`` as ``ErrorMessage`` items. ``ApiError`` exists for callers
that prefer to raise (``envelope.raise_for_error()``) and for the lazy list
iterator, which has no envelope to return.

Usage:
    from b24sdk.core.errors import TransportError

    raise TransportError(
        error_code="NETWORK_ERROR",
        message="Connection refused",
        context={"method": "crm.item.list"},
    )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


def _mask_sensitive_data(value: str) -> str:
    """Mask sensitive data in strings (webhook secrets, tokens, etc.).

    Examples:
        "https://x.bitrix24.com/rest/1/abc123def/" -> "https://x.bitrix24.com/rest/1/***/"
        "auth=abc123" -> "auth=***"
    """
    if not isinstance(value, str):
        return str(value)

    # Mask webhook secrets: /rest/<user>/<secret>/
    value = re.sub(
        r"(/rest/(?:api/)?\d+/)([a-zA-Z0-9]{6,})",
        r"\1***",
        value,
    )

    # Mask bearer tokens
    value = re.sub(
        r"(Bearer\s+)([a-zA-Z0-9._-]{8,})",
        r"\1***",
        value,
        flags=re.IGNORECASE,
    )

    # Mask tokens: auth=abc123 -> auth=***
    value = re.sub(
        r"(auth|token|key|secret|password|access_token|refresh_token)\s*=\s*([^\s&]+)",
        r"\1=***",
        value,
        flags=re.IGNORECASE,
    )

    return value


def _mask_dict_values(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively mask sensitive data in dictionary values."""
    masked: dict[str, Any] = {}
    sensitive_keys = {
        "password", "secret", "token", "auth", "key", "webhook", "signature",
    }

    for key, value in data.items():
        key_lower = str(key).lower()

        if any(sensitive in key_lower for sensitive in sensitive_keys):
            if isinstance(value, str):
                masked[key] = _mask_sensitive_data(value)
            else:
                masked[key] = "***"
        elif isinstance(value, dict):
            masked[key] = _mask_dict_values(value)
        elif isinstance(value, str):
            masked[key] = _mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


@dataclass(frozen=True)
class ErrorMessage:
    """One structured error reported by the server for a call or batch command."""

    code: str
    message: str
    validation: tuple[dict[str, Any], ...] = ()
    key: str | None = None

    def __str__(self) -> str:
        text = f"{self.code}: {self.message}" if self.message else self.code
        return f"[{self.key}] {text}" if self.key is not None else text


@dataclass(eq=False)
class SdkError(Exception):
    """Base class for errors raised by the SDK.

    Attributes:
        error_code: Unique error code for automation
        message: Human-readable error message
        status: HTTP status code, 0 when the request never got a response
        context: Additional context (method, request id, ...) - masked in to_dict()
    """

    error_code: str
    message: str
    status: int = 0
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.error_code:
            raise ValueError(f"{type(self).__name__}.error_code cannot be empty")

    def __str__(self) -> str:
        return f"{type(self).__name__} [{self.error_code}]: {_mask_sensitive_data(self.message)}"

    def to_dict(self) -> dict[str, Any]:
        """Structured error representation for logging/monitoring.

        Automatically masks sensitive data in context.
        """
        return {
            "kind": type(self).__name__,
            "error_code": self.error_code,
            "message": _mask_sensitive_data(self.message),
            "status": self.status,
            "context": _mask_dict_values(self.context),
        }


@dataclass(eq=False)
class TransportError(SdkError):
    """Network/DNS/TLS failure or an unparseable HTTP response. Never retried."""


@dataclass(eq=False)
class ApiError(SdkError):
    """Business-logic rejection by the server, raised only on explicit request."""

    errors: tuple[ErrorMessage, ...] = ()

    @classmethod
    def from_messages(
        cls,
        errors: tuple[ErrorMessage, ...] | list[ErrorMessage],
        *,
        status: int = 0,
        context: dict[str, Any] | None = None,
    ) -> ApiError:
        errors = tuple(errors)
        first = errors[0] if errors else ErrorMessage("UNKNOWN_ERROR", "Unknown API error")
        return cls(
            error_code=first.code or "UNKNOWN_ERROR",
            message="; ".join(str(e) for e in errors) or first.message,
            status=status,
            context=context or {},
            errors=errors,
        )


@dataclass(eq=False)
class RateLimitTimeout(SdkError):
    """Rate-limit permit was not acquired before the caller's deadline."""


@dataclass(eq=False)
class Cancelled(SdkError):
    """The caller aborted the call (cancel event set or deadline hit in flight)."""


@dataclass(eq=False)
class DecodeError(SdkError):
    """Malformed push frame. Logged and dropped by the pull client."""


@dataclass(eq=False)
class ConfigurationError(SdkError):
    """Invalid setup detected before any request is sent."""
