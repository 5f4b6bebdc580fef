"""Pull (push-server) integration package."""

from b24sdk.integrations.pull.channel_manager import ChannelManager, PublicChannel
from b24sdk.integrations.pull.client import PullClient, PullStatus, SubscriptionType
from b24sdk.integrations.pull.codec import PullCodec, Publication, PushMessage
from b24sdk.integrations.pull.connector import Connector, LongPollingConnector, WebSocketConnector
from b24sdk.integrations.pull.schema import PullSchema

__all__ = [
    "ChannelManager",
    "Connector",
    "LongPollingConnector",
    "PublicChannel",
    "Publication",
    "PullClient",
    "PullCodec",
    "PullSchema",
    "PullStatus",
    "PushMessage",
    "SubscriptionType",
    "WebSocketConnector",
]
