"""Live WebSocket connections and fan-out to all of them."""

import asyncio
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .models import Message

logger = logging.getLogger(__name__)


class Connection:
    """One client WebSocket. Sends are serialized and never raise."""

    def __init__(self, websocket: WebSocket, peer: str = "unknown") -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.peer = peer
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, message: Message) -> bool:
        """Write one message. Returns False when the connection is gone."""
        if not self.is_open:
            logger.debug("Dropping %s for closed connection %s", message.type, self.id)
            return False
        payload = message.to_json()
        try:
            async with self._send_lock:
                await self.websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("Send of %s to %s failed: %s", message.type, self.id, e)
            return False
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.is_open:
            return
        try:
            async with self._send_lock:
                await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("Close of %s failed: %s", self.id, e)


class ConnectionRegistry:
    """Mapping of connection id to Connection.

    All access happens on the event loop; broadcasts iterate over a snapshot so
    a connection removed mid-broadcast is simply skipped.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def register(self, connection: Connection) -> str:
        self._connections[connection.id] = connection
        return connection.id

    def unregister(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    async def broadcast(self, message: Message) -> int:
        """Send to every open connection; returns how many accepted the frame."""
        targets = [c for c in self.connections() if c.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(message) for c in targets))
        return sum(1 for ok in results if ok)
