"""Accept, serve and tear down client WebSockets; orderly shutdown."""

import logging

from fastapi import WebSocket

from .models import push
from .registry import Connection, ConnectionRegistry
from .router import RequestRouter
from .status import StatusBroadcaster
from .storage import TrainingDataStorage
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

CLOSE_GOING_AWAY = 1001
CLOSE_SERVICE_RESTART = 1012


class LifecycleManager:
    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        router: RequestRouter,
        broadcaster: StatusBroadcaster,
        tasks: BackgroundTasks,
        storage: TrainingDataStorage,
        cleanup_uploads: bool = True,
    ) -> None:
        self.registry = registry
        self.router = router
        self.broadcaster = broadcaster
        self.tasks = tasks
        self.storage = storage
        self._cleanup_uploads = cleanup_uploads
        self.accepting = True
        self._shutdown_notified = False
        self._closed = False

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client session from accept to disconnect."""
        if not self.accepting:
            await websocket.close(code=CLOSE_SERVICE_RESTART)
            return

        await websocket.accept()
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        conn = Connection(websocket, peer=peer)
        self.registry.register(conn)
        logger.info("Client connected: %s from %s (%d open)", conn.id, peer, len(self.registry))

        await conn.send(
            push("connected", {"clientId": conn.id, "message": "Connected to local bridge server"})
        )
        self.broadcaster.trigger()

        try:
            await self._receive_loop(conn)
        except Exception:
            logger.exception("WebSocket error for client %s", conn.id)
            await conn.close(code=1011)
        finally:
            self.disconnect(conn)

    async def _receive_loop(self, conn: Connection) -> None:
        while True:
            event = await conn.websocket.receive()
            if event["type"] == "websocket.disconnect":
                logger.info("Client disconnected: %s (code %s)", conn.id, event.get("code"))
                return
            raw = event.get("text")
            if raw is None and event.get("bytes") is not None:
                raw = event["bytes"].decode("utf-8", errors="replace")
            if raw is not None:
                self.router.submit(conn, raw)

    def disconnect(self, conn: Connection) -> None:
        """Forget a connection and cancel its timers; in-flight requests finish unobserved."""
        self.registry.unregister(conn.id)
        self.tasks.cancel_owner(conn.id)

    async def notify_shutdown(self) -> None:
        """Stop accepting, tell every client, then close them all."""
        if self._shutdown_notified:
            return
        self._shutdown_notified = True
        self.accepting = False
        delivered = await self.registry.broadcast(
            push("server-shutdown", {"message": "Server is shutting down"})
        )
        logger.info("Shutdown notice sent to %d client(s)", delivered)
        for conn in self.registry.connections():
            await conn.close(code=CLOSE_GOING_AWAY, reason="server shutdown")
            self.disconnect(conn)

    async def shutdown(self) -> None:
        """Full shutdown: notify clients, stop background work, release upload storage."""
        if self._closed:
            return
        await self.notify_shutdown()
        self._closed = True
        await self.broadcaster.stop()
        await self.tasks.cancel_all()
        await self.router.cancel_inflight()
        if self._cleanup_uploads:
            try:
                self.storage.cleanup()
            except OSError as e:
                logger.warning("Upload cleanup failed: %s", e)
