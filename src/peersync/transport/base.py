"""Transport capability: how control messages and file payloads reach the peer."""

from abc import ABC, abstractmethod
from typing import Optional

from ..utils.logging import get_logger


class TransportListener(ABC):
    """Receives inbound traffic from a transport."""

    @abstractmethod
    async def handle_bytes(self, peer_id: str, data: bytes) -> None:
        """Handle one encoded control message."""
        pass

    @abstractmethod
    async def handle_file(self, peer_id: str, data: bytes) -> None:
        """Handle the payload of the file announced by the last transfer start."""
        pass

    @abstractmethod
    async def handle_peer_disconnected(self, peer_id: str) -> None:
        """Handle loss of the connection to ``peer_id``."""
        pass


class BaseTransport(ABC):
    """Abstract transport over an already-established peer connection.

    Implementations deliver inbound traffic to the bound listener in the
    order it was sent, and must return from every send within their own
    timeout. A send that times out or fails returns False.
    """

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)
        self._listener: Optional[TransportListener] = None

    def bind(self, listener: TransportListener) -> None:
        self._listener = listener

    @property
    def listener(self) -> Optional[TransportListener]:
        return self._listener

    @abstractmethod
    async def send_message(self, peer_id: str, data: bytes) -> bool:
        """Send one encoded control message.

        Returns:
            True if the message was handed to the peer
        """
        pass

    @abstractmethod
    async def send_file(self, peer_id: str, absolute_path: str) -> bool:
        """Send a file's content in one piece.

        Returns:
            True if the whole file was handed to the peer
        """
        pass


class TransportError(Exception):
    """Base exception for transport errors."""

    code = "transport_error"


class SendFailedError(TransportError):
    """Raised when a message or file could not be sent."""

    code = "send_failed"


class PeerDisconnectedError(TransportError):
    """Raised when the peer went away during a session."""

    code = "peer_disconnected"
