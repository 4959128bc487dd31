"""Transport capability and the in-process loopback adapter."""

from .base import (
    BaseTransport,
    PeerDisconnectedError,
    SendFailedError,
    TransportError,
    TransportListener,
)
from .loopback import LoopbackTransport

__all__ = [
    "BaseTransport",
    "PeerDisconnectedError",
    "SendFailedError",
    "TransportError",
    "TransportListener",
    "LoopbackTransport",
]
