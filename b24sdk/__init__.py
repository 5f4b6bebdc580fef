"""Bitrix24 REST and pull client runtime."""

from b24sdk.core.errors import (
    ApiError,
    Cancelled,
    ConfigurationError,
    DecodeError,
    ErrorMessage,
    RateLimitTimeout,
    SdkError,
    TransportError,
)
from b24sdk.core.result import ResultEnvelope
from b24sdk.integrations.rest.client import B24Client
from b24sdk.integrations.rest.dispatcher import SDK_VERSION

__version__ = SDK_VERSION

__all__ = [
    "ApiError",
    "B24Client",
    "Cancelled",
    "ConfigurationError",
    "DecodeError",
    "ErrorMessage",
    "RateLimitTimeout",
    "ResultEnvelope",
    "SdkError",
    "TransportError",
    "__version__",
]
