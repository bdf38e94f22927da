"""Periodic backend status broadcast."""

import asyncio
import logging
from datetime import datetime, timezone

from .backend_client import BackendClient
from .models import BackendStatusSnapshot, push
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """Probe both backends every ``interval`` seconds and push the result to all clients."""

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        client: BackendClient,
        synthesis_health_url: str,
        conversion_health_url: str,
        interval: float = 5.0,
    ) -> None:
        self._registry = registry
        self._client = client
        self._synthesis_health_url = synthesis_health_url
        self._conversion_health_url = conversion_health_url
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._triggered: set[asyncio.Task] = set()
        self.latest: BackendStatusSnapshot | None = None

    async def snapshot(self) -> BackendStatusSnapshot:
        synthesis_up, conversion_up = await asyncio.gather(
            self._client.probe(self._synthesis_health_url),
            self._client.probe(self._conversion_health_url),
        )
        self.latest = BackendStatusSnapshot(
            synthesis_backend_up=synthesis_up,
            conversion_backend_up=conversion_up,
            observed_at=datetime.now(timezone.utc),
        )
        return self.latest

    async def tick(self) -> None:
        try:
            snapshot = await self.snapshot()
            delivered = await self._registry.broadcast(push("service-status", snapshot.to_wire()))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Status broadcast failed")
            return
        logger.debug(
            "service-status synthesis=%s conversion=%s -> %d client(s)",
            snapshot.synthesis_backend_up, snapshot.conversion_backend_up, delivered,
        )

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.tick()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="status-broadcaster")
        logger.info("Status broadcaster started (every %.1fs)", self._interval)

    def trigger(self) -> asyncio.Task:
        """Run one tick right away without waiting for the next period."""
        task = asyncio.create_task(self.tick(), name="status-broadcast-now")
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)
        return task

    async def stop(self) -> None:
        tasks = list(self._triggered)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
