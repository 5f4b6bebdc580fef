"""Restriction presets for the REST rate limiter.
==============================================
A ``RestrictionPolicy`` is read-only once built; every client instance gets
its own limiter state built from one. Values mirror the portal-side limits:
a leaky bucket of 50 requests draining at 2 per second, and 480 seconds of
operating time per method inside a 10-minute window.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from b24sdk.core.errors import ConfigurationError


class RestrictionPolicy(BaseModel):
    """Throughput and concurrency bounds for one client instance."""

    model_config = ConfigDict(frozen=True)

    max_requests_per_second: float = Field(default=2.0, gt=0, description="Bucket drain rate.")
    max_concurrent_batch_commands: int = Field(
        default=8, ge=1, description="Requests allowed in flight at the same time."
    )
    sleep_interval_ms: int = Field(
        default=1000, ge=0, description="Extra pause after the server reports QUERY_LIMIT_EXCEEDED."
    )
    burst_limit: int = Field(default=50, ge=1, description="Bucket size (requests issued without waiting).")

    adaptive_enabled: bool = True
    adaptive_threshold_percent: float = Field(default=80.0, ge=0, le=100)
    adaptive_delay_coefficient: float = Field(default=0.01, ge=0)
    max_adaptive_delay_ms: int = Field(default=7000, ge=0)

    operating_limit_ms: int = Field(default=480_000, gt=0)
    operating_window_ms: int = Field(default=600_000, gt=0)
    heavy_percent: float = Field(default=80.0, ge=0, le=100)

    @model_validator(mode="after")
    def _validate_window(self) -> "RestrictionPolicy":
        if self.operating_limit_ms > self.operating_window_ms:
            raise ValueError("operating_limit_ms must be <= operating_window_ms")
        return self

    @property
    def refill_interval(self) -> float:
        """Seconds needed to regain one token."""
        return 1.0 / self.max_requests_per_second


DEFAULT_POLICY = RestrictionPolicy()

BATCH_PROCESSING_POLICY = RestrictionPolicy(
    max_requests_per_second=1.0,
    burst_limit=30,
    max_concurrent_batch_commands=2,
    adaptive_threshold_percent=50.0,
    adaptive_delay_coefficient=0.015,
    max_adaptive_delay_ms=10_000,
    heavy_percent=50.0,
)

ENTERPRISE_POLICY = RestrictionPolicy(
    max_requests_per_second=5.0,
    burst_limit=250,
    max_concurrent_batch_commands=16,
)

REALTIME_POLICY = RestrictionPolicy(
    adaptive_enabled=False,
    max_concurrent_batch_commands=16,
)

PRESETS: dict[str, RestrictionPolicy] = {
    "default": DEFAULT_POLICY,
    "batch_processing": BATCH_PROCESSING_POLICY,
    "enterprise": ENTERPRISE_POLICY,
    "realtime": REALTIME_POLICY,
}


def get_restriction_policy(name: str) -> RestrictionPolicy:
    """Resolve a preset by name ("batch-processing" is accepted as well)."""
    key = name.strip().lower().replace("-", "_")
    try:
        return PRESETS[key]
    except KeyError:
        raise ConfigurationError(
            error_code="UNKNOWN_RESTRICTION_PRESET",
            message=f"Unknown restriction preset {name!r}",
            context={"known": sorted(PRESETS)},
        ) from None
