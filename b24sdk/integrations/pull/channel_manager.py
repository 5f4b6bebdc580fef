"""Public channel ids of users, cached until they expire."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from b24sdk.integrations.rest.client import B24Client

logger = logging.getLogger(__name__)

PUBLIC_CHANNEL_METHOD = "pull.channel.public.get"


@dataclass(frozen=True)
class PublicChannel:
    user_id: int
    public_id: str
    signature: str
    start: datetime | None
    end: datetime | None

    def is_valid(self, now: datetime) -> bool:
        return self.end is not None and self.end > now


def _parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ChannelManager:
    """Resolves user ids to ``(public_id, signature)`` receivers via REST."""

    def __init__(
        self,
        rest: B24Client,
        *,
        method: str = PUBLIC_CHANNEL_METHOD,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.rest = rest
        self.method = method
        self._now = now
        self._channels: dict[int, PublicChannel] = {}

    def set_public_ids(self, descriptors: list[dict[str, Any]]) -> None:
        for descriptor in descriptors:
            try:
                user_id = int(descriptor["user_id"])
            except (KeyError, TypeError, ValueError):
                logger.warning("[B24:PULL] Skipping public channel without user_id: %s", descriptor)
                continue
            self._channels[user_id] = PublicChannel(
                user_id=user_id,
                public_id=str(descriptor.get("public_id") or ""),
                signature=str(descriptor.get("signature") or ""),
                start=_parse_date(descriptor.get("start")),
                end=_parse_date(descriptor.get("end")),
            )

    async def get_public_ids(self, user_ids: list[int]) -> dict[int, PublicChannel]:
        """Channels for ``user_ids``; users the portal does not know are left out."""
        now = self._now()
        result: dict[int, PublicChannel] = {}
        unknown: list[int] = []
        for user_id in user_ids:
            channel = self._channels.get(int(user_id))
            if channel is not None and channel.is_valid(now):
                result[int(user_id)] = channel
            else:
                unknown.append(int(user_id))

        if not unknown:
            return result

        envelope = await self.rest.call_method(self.method, {"users": unknown})
        if not envelope.is_success:
            logger.warning(
                "[B24:PULL] %s failed: %s", self.method, "; ".join(envelope.error_messages())
            )
            return result

        data = envelope.data
        descriptors = list(data.values()) if isinstance(data, dict) else list(data or [])
        self.set_public_ids([d for d in descriptors if isinstance(d, dict)])
        for user_id in unknown:
            if user_id in self._channels:
                result[user_id] = self._channels[user_id]
        return result
