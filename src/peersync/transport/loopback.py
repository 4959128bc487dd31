"""In-process transport joining two endpoints, for local syncs and tests."""

import asyncio
from typing import Any, List, Optional, Tuple

from .base import BaseTransport
from ..filesystem.base import BaseFileSystem

_MESSAGE = "message"
_FILE = "file"
_DISCONNECT = "disconnect"


class LoopbackTransport(BaseTransport):
    """One end of an in-process connection.

    Each endpoint owns an inbox queue drained by a pump task, so traffic is
    delivered in send order and a send never waits on the receiver's
    handlers. Use ``pair`` to create two connected endpoints.
    """

    def __init__(self, peer_id: str, filesystem: BaseFileSystem, timeout: float = 30.0):
        super().__init__()
        self.peer_id = peer_id
        self.filesystem = filesystem
        self.timeout = timeout
        self.connected = False
        self.sent: List[Tuple[str, Any]] = []

        self._remote: Optional["LoopbackTransport"] = None
        self._inbox: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    @classmethod
    def pair(
        cls,
        filesystem_a: BaseFileSystem,
        filesystem_b: BaseFileSystem,
        peer_a: str = "peer-a",
        peer_b: str = "peer-b",
        timeout: float = 30.0
    ) -> Tuple["LoopbackTransport", "LoopbackTransport"]:
        """Create two endpoints connected to each other."""
        a = cls(peer_a, filesystem_a, timeout)
        b = cls(peer_b, filesystem_b, timeout)
        a._remote, b._remote = b, a
        a.connected = b.connected = True
        return a, b

    @property
    def remote_peer_id(self) -> Optional[str]:
        return self._remote.peer_id if self._remote else None

    def _can_reach(self, peer_id: str) -> bool:
        if not self.connected or self._remote is None:
            self.logger.warning("Send on disconnected transport", peer_id=peer_id)
            return False
        if peer_id != self._remote.peer_id:
            self.logger.warning("Unknown peer", peer_id=peer_id)
            return False
        return True

    async def send_message(self, peer_id: str, data: bytes) -> bool:
        if not self._can_reach(peer_id):
            return False
        self.sent.append((_MESSAGE, data))
        self._remote._enqueue(_MESSAGE, data)
        return True

    async def send_file(self, peer_id: str, absolute_path: str) -> bool:
        if not self._can_reach(peer_id):
            return False

        try:
            data = await asyncio.wait_for(
                asyncio.to_thread(self.filesystem.read_file, absolute_path),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.logger.error("Timed out reading file", path=absolute_path, timeout=self.timeout)
            return False
        except OSError as e:
            self.logger.error("Failed to read file", path=absolute_path, error=str(e))
            return False

        # The peer may have gone away while the file was being read
        if not self.connected:
            return False

        self.sent.append((_FILE, absolute_path))
        self._remote._enqueue(_FILE, data)
        return True

    async def disconnect(self) -> None:
        """Drop the connection; both listeners are told the other side is gone."""
        remote = self._remote
        if not self.connected or remote is None:
            return

        self.connected = remote.connected = False
        self._enqueue(_DISCONNECT, remote.peer_id)
        remote._enqueue(_DISCONNECT, self.peer_id)
        self.logger.info("Loopback disconnected", peer_id=self.peer_id, remote_peer_id=remote.peer_id)

    async def drain(self) -> None:
        """Wait until everything queued for this endpoint has been handled."""
        await self._inbox.join()

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    def _enqueue(self, kind: str, payload: Any) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        self._inbox.put_nowait((kind, payload))

    async def _pump(self) -> None:
        while True:
            kind, payload = await self._inbox.get()
            try:
                await self._deliver(kind, payload)
            except Exception as e:
                self.logger.error("Listener failed on inbound traffic", kind=kind, error=str(e))
            finally:
                self._inbox.task_done()

    async def _deliver(self, kind: str, payload: Any) -> None:
        listener = self.listener
        if listener is None:
            self.logger.warning("No listener bound, dropping inbound traffic", kind=kind)
            return

        sender = self.remote_peer_id
        if kind == _MESSAGE:
            await listener.handle_bytes(sender, payload)
        elif kind == _FILE:
            await listener.handle_file(sender, payload)
        elif kind == _DISCONNECT:
            await listener.handle_peer_disconnected(payload)
