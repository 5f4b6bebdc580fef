"""Configuration for the b24sdk runtime.

Reads environment variables (or ``.env``) for portal access and runtime tuning.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

SUPPORTED_API_VERSIONS = ("v2", "v3")


class Settings(BaseSettings):
    """Runtime configuration loaded from environment."""

    # =========================================================================
    # PORTAL ACCESS
    # =========================================================================
    B24_WEBHOOK_URL: SecretStr = Field(
        default=SecretStr(""),
        description="Inbound webhook URL, e.g. https://portal.bitrix24.com/rest/1/<secret>/",
    )
    B24_API_VERSION: str = Field(
        default="v2", description="Default REST API version for call_method: v2 or v3."
    )
    B24_REQUEST_TIMEOUT: float = Field(
        default=30.0, gt=0, description="HTTP timeout for one REST request, in seconds."
    )

    # =========================================================================
    # BATCH / LIST
    # =========================================================================
    B24_MAX_BATCH_COMMANDS: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Maximum commands per physical batch request (server hard limit is 50).",
    )
    B24_LIST_PAGE_SIZE: int = Field(
        default=50, gt=0, description="Page size the server uses for list methods."
    )

    # =========================================================================
    # RATE LIMITING
    # =========================================================================
    B24_RESTRICTION_PRESET: str = Field(
        default="default",
        description="Restriction preset: default, batch_processing, enterprise, realtime.",
    )

    # =========================================================================
    # PULL CHANNEL
    # =========================================================================
    B24_PULL_RECONNECT_MAX_DELAY: float = Field(
        default=3600.0, gt=0, description="Upper bound of the pull reconnect delay, in seconds."
    )
    B24_PULL_MAX_IDS_TO_STORE: int = Field(
        default=10, gt=0, description="How many recent message ids are kept for de-duplication."
    )
    B24_PULL_QUEUE_LIMIT: int = Field(
        default=1000, gt=0, description="Max outbound frames queued while the channel is down."
    )
    B24_PULL_SERVER_VERSION: int = Field(
        default=4,
        ge=0,
        description="Push server version: 5+ speaks JSON-RPC, 4 protobuf, older plain text.",
    )

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================
    LOG_LEVEL: str = Field(default="INFO", description="Minimum log level.")
    LOG_JSON: bool = Field(default=False, description="Emit JSON log lines instead of pretty text.")

    @model_validator(mode="after")
    def _validate_choices(self) -> "Settings":
        from b24sdk.conf.restriction_config import PRESETS

        if self.B24_API_VERSION not in SUPPORTED_API_VERSIONS:
            raise ValueError(
                f"B24_API_VERSION must be one of {SUPPORTED_API_VERSIONS}, got {self.B24_API_VERSION!r}"
            )
        if self.B24_RESTRICTION_PRESET not in PRESETS:
            raise ValueError(
                f"B24_RESTRICTION_PRESET must be one of {sorted(PRESETS)}, got {self.B24_RESTRICTION_PRESET!r}"
            )
        return self

    @property
    def webhook_configured(self) -> bool:
        """Check if an inbound webhook is configured."""
        return bool(self.B24_WEBHOOK_URL.get_secret_value())

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[arg-type]


settings = get_settings()
