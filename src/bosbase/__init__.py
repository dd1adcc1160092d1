"""BosBase — async Python client for the BosBase backend.

Wraps the REST API (records, auth, files, health) and the two push
channels: the SSE realtime stream and the pub/sub WebSocket.
"""

__version__ = "0.1.0"

from bosbase.auth import AuthStore
from bosbase.client import BosBase
from bosbase.config import Settings
from bosbase.errors import (
    AckTimeoutError,
    ClientResponseError,
    ConnectionClosedError,
    ConnectionNotEstablishedError,
)
from bosbase.schemas.pubsub import PublishAck, PubSubMessage

__all__ = [
    "AckTimeoutError",
    "AuthStore",
    "BosBase",
    "ClientResponseError",
    "ConnectionClosedError",
    "ConnectionNotEstablishedError",
    "PubSubMessage",
    "PublishAck",
    "Settings",
    "__version__",
]
