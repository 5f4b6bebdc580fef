"""Pull client: realtime events from the portal push server.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> (RECONNECTING | DISCONNECTED)

Delivery is best effort. Frames that would arrive while the channel is down
are lost; the REST API stays the source of truth. Outbound frames sent while
the channel is down are queued and flushed in FIFO order on the next
``CONNECTED``.

Usage:
    pull = PullClient(WebSocketConnector(url))
    pull.subscribe(on_deal_update, module_id="crm", command="onCrmDealUpdate")
    await pull.start()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections import Counter, deque
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from b24sdk.core.backoff import reconnect_delay
from b24sdk.core.errors import ConfigurationError, DecodeError, TransportError
from b24sdk.core.logging import log_event, log_with_root_cause, safe_preview
from b24sdk.integrations.pull.codec import (
    DEFAULT_SERVER_VERSION,
    JSON_RPC_PING,
    JSON_RPC_PONG,
    SENDER_CLIENT,
    PullCodec,
    PullProtocol,
    Publication,
)
from b24sdk.integrations.pull.connector import (
    CHANNEL_EXPIRED,
    CONFIG_EXPIRED,
    CONFIG_REPLACED,
    NORMAL_CLOSURE,
    SERVER_RESTARTED,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from b24sdk.conf.config import Settings
    from b24sdk.integrations.pull.channel_manager import ChannelManager
    from b24sdk.integrations.pull.codec import PushMessage
    from b24sdk.integrations.pull.connector import Connector, Frame

logger = logging.getLogger(__name__)

MAX_IDS_TO_STORE = 10
DEFAULT_QUEUE_LIMIT = 1000
DEFAULT_RECONNECT_MAX_DELAY = 600.0
SERVER_RESTART_DELAY = 15.0
ONLINE_EVENT_MAX_AGE = 240.0

SYSTEM_MODULE = "pull"
ONLINE_MODULE = "online"


class PullStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SubscriptionType(str, Enum):
    SERVER = "server"
    CLIENT = "client"
    ONLINE = "online"


class SystemCommand(str, Enum):
    CHANNEL_EXPIRE = "CHANNEL_EXPIRE"
    CONFIG_EXPIRE = "CONFIG_EXPIRE"
    SERVER_RESTART = "SERVER_RESTART"


@dataclass(frozen=True)
class Subscription:
    callback: Callable[[PushMessage], Any]
    type: SubscriptionType = SubscriptionType.SERVER
    module_id: str | None = None
    command: str | None = None

    def matches(self, message: PushMessage, kind: SubscriptionType) -> bool:
        if self.type != kind:
            return False
        if self.module_id is not None and self.module_id != message.module_id:
            return False
        return self.command is None or self.command == message.command


class PullClient:
    """One push-server connection with subscriptions and reconnects.

    Args:
        connector: Channel to the push server
        codec: Frame codec; each client gets its own schema when omitted
        server_version: Push server version, picks the codec protocol when
            ``codec`` is omitted
        channel_manager: Resolves user ids for ``publish``
        reconnect_max_delay: Upper bound of a reconnect pause, seconds
        max_ids_to_store: How many recent message ids are kept for dedupe
        queue_limit: Outbound frames kept while disconnected
    """

    def __init__(
        self,
        connector: Connector,
        *,
        codec: PullCodec | None = None,
        channel_manager: ChannelManager | None = None,
        server_version: int = DEFAULT_SERVER_VERSION,
        reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY,
        max_ids_to_store: int = MAX_IDS_TO_STORE,
        queue_limit: int = DEFAULT_QUEUE_LIMIT,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.connector = connector
        self.codec = codec or PullCodec(server_version=server_version)
        self.channel_manager = channel_manager
        self.reconnect_max_delay = reconnect_max_delay
        self.queue_limit = queue_limit
        self._sleep = sleep
        self._rand = rand
        self._wall_clock = wall_clock

        self._status = PullStatus.DISCONNECTED
        self._subscriptions: list[Subscription] = []
        self._status_callbacks: list[Callable[[PullStatus], Any]] = []
        self._outbound: deque[Frame] = deque()
        self._send_lock = asyncio.Lock()
        self._last_ids: deque[str] = deque(maxlen=max_ids_to_store)
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._forced_delay: float | None = None
        self.attempt = 0
        self.message_count = 0
        self.history: Counter[tuple[str, str]] = Counter()
        self.on_config_expired: Callable[[], Any] | None = None
        # (channel_type, new_channel) before reconnecting on a replaced channel
        self.on_channel_replaced: Callable[[str | None, Any], Any] | None = None

    @classmethod
    def from_settings(cls, connector: Connector, settings: Settings | None = None, **kwargs: Any) -> PullClient:
        """Build a client tuned by the ``B24_PULL_*`` environment settings."""
        if settings is None:
            from b24sdk.conf.config import get_settings

            settings = get_settings()
        options: dict[str, Any] = {
            "reconnect_max_delay": settings.B24_PULL_RECONNECT_MAX_DELAY,
            "max_ids_to_store": settings.B24_PULL_MAX_IDS_TO_STORE,
            "queue_limit": settings.B24_PULL_QUEUE_LIMIT,
            "server_version": settings.B24_PULL_SERVER_VERSION,
        }
        options.update(kwargs)
        return cls(connector, **options)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def status(self) -> PullStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == PullStatus.CONNECTED

    @property
    def queued(self) -> int:
        return len(self._outbound)

    def subscribe_status(self, callback: Callable[[PullStatus], Any]) -> Callable[[], None]:
        """Call ``callback(status)`` on every status change."""
        if callback not in self._status_callbacks:
            self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    def _set_status(self, status: PullStatus) -> None:
        if status == self._status:
            return
        previous, self._status = self._status, status
        logger.info("[B24:PULL] status %s -> %s", previous.value, status.value)
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception as e:
                log_with_root_cause(logger, "warning", "[B24:PULL] status callback failed", error=e)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        callback: Callable[[PushMessage], Any],
        *,
        type: SubscriptionType | str = SubscriptionType.SERVER,
        module_id: str | None = None,
        command: str | None = None,
    ) -> Callable[[], None]:
        """Register a callback; subscribing the same filter twice is a no-op.

        Returns:
            Function that removes the subscription
        """
        subscription = Subscription(
            callback=callback,
            type=SubscriptionType(type),
            module_id=module_id.lower() if module_id else None,
            command=command,
        )
        if subscription not in self._subscriptions:
            self._subscriptions.append(subscription)
        return lambda: self.unsubscribe(subscription)

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run(), name="b24-pull")

    async def stop(self, code: int = NORMAL_CLOSURE, reason: str = "manual stop") -> None:
        self._stopping = True
        task, self._task = self._task, None
        with suppress(TransportError):
            await self.connector.close(code, reason)
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._set_status(PullStatus.DISCONNECTED)

    async def __aenter__(self) -> PullClient:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def run(self) -> None:
        """Connect, read frames, reconnect; returns only after ``stop()``."""
        while not self._stopping:
            self._set_status(PullStatus.CONNECTING)
            try:
                await self.connector.open()
            except TransportError as e:
                self.attempt += 1
                log_with_root_cause(logger, "warning", "[B24:PULL] connect failed", error=e, attempt=self.attempt)
                await self._pause()
                continue

            self.attempt = 0
            self._set_status(PullStatus.CONNECTED)
            log_event(logger, event="pull_connected", level="info", queued=len(self._outbound))
            try:
                await self._flush_outbound()
                async for frame in self.connector.frames():
                    await self.handle_frame(frame)
            except TransportError as e:
                log_with_root_cause(logger, "warning", "[B24:PULL] channel dropped", error=e)

            if self._stopping:
                break
            await self._pause()

        self._set_status(PullStatus.DISCONNECTED)

    async def _pause(self) -> None:
        if self._stopping:
            return
        if self._forced_delay is not None:
            delay, self._forced_delay = self._forced_delay, None
        else:
            delay = reconnect_delay(self.attempt, max_delay=self.reconnect_max_delay, rand=self._rand)
        self._set_status(PullStatus.RECONNECTING)
        log_event(
            logger,
            event="pull_reconnect_scheduled",
            level="info",
            attempt=self.attempt,
            delay_s=round(delay, 2),
        )
        await self._sleep(delay)

    async def reconnect(self, code: int, reason: str, delay: float | None = None) -> None:
        """Drop the current channel; the run loop opens a new one."""
        logger.info("[B24:PULL] reconnect requested (code=%s): %s", code, reason)
        self._forced_delay = delay
        await self.connector.close(code, reason)

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(self, frame: Frame) -> bool:
        """Send a frame now, or queue it until the channel is connected.

        Returns:
            True if the frame was written to the channel
        """
        if len(self._outbound) >= self.queue_limit:
            self._outbound.popleft()
            logger.warning("[B24:PULL] outbound queue full (%d), oldest frame dropped", self.queue_limit)
        self._outbound.append(frame)
        if not self.is_connected:
            logger.debug("[B24:PULL] channel %s, frame queued (%d)", self._status.value, len(self._outbound))
            return False
        try:
            await self._flush_outbound()
        except TransportError as e:
            log_with_root_cause(logger, "warning", "[B24:PULL] send failed, frame kept in queue", error=e)
            return False
        return True

    async def _flush_outbound(self) -> None:
        async with self._send_lock:
            while self._outbound:
                frame = self._outbound.popleft()
                try:
                    await self.connector.send(frame)
                except TransportError:
                    self._outbound.appendleft(frame)
                    raise

    async def publish(
        self,
        module_id: str,
        command: str,
        params: dict[str, Any] | None = None,
        *,
        user_ids: Iterable[int] = (),
        channels: Iterable[str | tuple[str, str]] = (),
        expiry: int = 0,
    ) -> bool:
        """Publish a client event to users and/or public channels.

        Channels are ``"publicId.signature"`` strings or ``(public_id, signature)`` pairs.
        JSON-RPC servers resolve user ids themselves; protobuf servers need
        their public channels, looked up through the ``ChannelManager``.
        """
        protocol = self.codec.protocol
        if protocol is PullProtocol.PLAIN_TEXT:
            raise ConfigurationError(
                error_code="PULL_PUBLISH_UNSUPPORTED",
                message=f"Push server version {self.codec.server_version} does not accept client events",
            )

        receivers: list[tuple[str, str]] = []
        user_ids = [int(u) for u in user_ids]
        if user_ids and protocol is PullProtocol.PROTOBUF:
            if self.channel_manager is None:
                raise ConfigurationError(
                    error_code="PULL_NO_CHANNEL_MANAGER",
                    message="Publishing to users needs a ChannelManager",
                )
            public_ids = await self.channel_manager.get_public_ids(user_ids)
            for user_id in user_ids:
                channel = public_ids.get(user_id)
                if channel is None or not channel.public_id:
                    raise ConfigurationError(
                        error_code="PULL_UNKNOWN_RECEIVER",
                        message=f"Could not determine public id for user {user_id}",
                    )
                receivers.append((channel.public_id, channel.signature))

        for channel in channels:
            if isinstance(channel, str) and "." in channel:
                public_id, signature = channel.split(".", 1)
            elif isinstance(channel, tuple) and len(channel) == 2:
                public_id, signature = channel
            else:
                raise ConfigurationError(
                    error_code="PULL_INVALID_CHANNEL",
                    message='Public channel must be "publicId.signature" or a (public_id, signature) pair',
                )
            receivers.append((public_id, signature))

        publication = Publication(
            module_id=module_id,
            command=command,
            params=dict(params or {}),
            receivers=tuple(receivers),
            user_ids=tuple(user_ids) if protocol is PullProtocol.JSON_RPC else (),
            expiry=expiry,
        )
        return await self.send(self.codec.encode_publications([publication]))

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle_frame(self, frame: Frame) -> int:
        """Decode one frame and deliver its messages; returns how many were delivered.

        Every message id seen becomes the connector's resume point. JSON-RPC
        servers also get a ``pong`` for each ``ping`` and a ``mack`` for every
        message, duplicates included.
        """
        json_rpc = self.codec.protocol is PullProtocol.JSON_RPC
        if json_rpc and frame == JSON_RPC_PING:
            await self.send(JSON_RPC_PONG)
            return 0

        try:
            messages = self.codec.decode(frame)
        except DecodeError as e:
            log_event(
                logger,
                event="pull_frame_dropped",
                level="warning",
                error_code=e.error_code,
                reason=e.message,
            )
            return 0

        delivered = 0
        for message in messages:
            if message.mid:
                self.connector.last_message_id = message.mid
            if message.mid and message.mid in self._last_ids:
                logger.warning("[B24:PULL] Duplicate message %s skipped", message.mid)
            else:
                if message.mid:
                    self._last_ids.append(message.mid)
                self.message_count += 1
                self.history[(message.module_id, message.command)] += 1
                await self._route(message)
                delivered += 1
            if json_rpc and message.mid:
                await self.send(self.codec.encode_ack(message.mid))
        return delivered

    async def _route(self, message: PushMessage) -> None:
        if message.sender_type == SENDER_CLIENT:
            await self._emit(SubscriptionType.CLIENT, message)
        elif message.module_id == SYSTEM_MODULE:
            await self._handle_system_command(message)
        elif message.module_id == ONLINE_MODULE:
            if self._is_stale_online_event(message):
                return
            await self._emit(SubscriptionType.ONLINE, message)
        else:
            await self._emit(SubscriptionType.SERVER, message)

    def _is_stale_online_event(self, message: PushMessage) -> bool:
        server_time = message.extra.get("server_time_unix")
        if not server_time:
            return False
        try:
            sent_at = float(server_time)
        except (TypeError, ValueError):
            log_event(
                logger,
                event="pull_frame_dropped",
                level="warning",
                error_code="PULL_BAD_SERVER_TIME",
                reason=f"online event {message.command} has server_time_unix={safe_preview(server_time, 40)}",
            )
            return True
        if self._wall_clock() - sent_at >= ONLINE_EVENT_MAX_AGE:
            logger.debug("[B24:PULL] stale online event %s skipped", message.command)
            return True
        return False

    async def _emit(self, kind: SubscriptionType, message: PushMessage) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(message, kind):
                continue
            try:
                result = subscription.callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log_event(
                    logger,
                    event="pull_subscriber_failed",
                    level="error",
                    module_id=message.module_id,
                    pull_command=message.command,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )

    async def _handle_system_command(self, message: PushMessage) -> None:
        command = message.command.upper()
        if command == SystemCommand.CHANNEL_EXPIRE:
            if message.params.get("action") == "reconnect":
                channel_type = (message.params.get("channel") or {}).get("type")
                await self._run_hook(self.on_channel_replaced, channel_type, message.params.get("new_channel"))
                await self.reconnect(CONFIG_REPLACED, "config was replaced")
            else:
                await self._notify_config_expired()
                await self.reconnect(CHANNEL_EXPIRED, "channel expired received")
        elif command == SystemCommand.CONFIG_EXPIRE:
            await self._notify_config_expired()
            await self.reconnect(CONFIG_EXPIRED, "config expired received")
        elif command == SystemCommand.SERVER_RESTART:
            await self.reconnect(SERVER_RESTARTED, "server was restarted", SERVER_RESTART_DELAY)
        else:
            logger.debug("[B24:PULL] ignoring system command %s", message.command)

    async def _notify_config_expired(self) -> None:
        await self._run_hook(self.on_config_expired)

    async def _run_hook(self, hook: Callable[..., Any] | None, *args: Any) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_with_root_cause(logger, "error", "[B24:PULL] config hook failed", error=e)

    def get_stats(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "attempt": self.attempt,
            "message_count": self.message_count,
            "queued": len(self._outbound),
            "history": {f"{module}:{command}": count for (module, command), count in self.history.items()},
        }
