import asyncio
import logging
import time
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

# Timeout presets per call type (seconds)
TIMEOUTS = {
    "probe": 2.0,
    "synthesis": 30.0,
    "passthrough": 30.0,
    "conversion": 60.0,
    "default": 30.0,
}


@dataclass
class CircuitBreaker:
    """Simple circuit breaker: open after N failures, half-open after cooldown."""

    threshold: int = 5
    cooldown: float = 30.0
    failure_count: int = field(default=0, init=False)
    last_failure: float = field(default=0.0, init=False)
    state: str = field(default="closed", init=False)  # closed | open | half-open

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure = time.monotonic()
        if self.failure_count >= self.threshold:
            self.state = "open"
            logger.warning("Circuit breaker OPEN after %d failures", self.failure_count)

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def allow_request(self) -> bool:
        if self.state == "closed":
            return True
        if self.state == "open":
            if time.monotonic() - self.last_failure > self.cooldown:
                self.state = "half-open"
                return True
            return False
        # half-open: allow one probe
        return True


class BackendClient:
    """Async HTTP client with retry and circuit breaker per backend.

    ``transport`` is handed to ``httpx.AsyncClient`` untouched, which lets tests
    plug in an ``httpx.MockTransport`` instead of real backends.
    """

    def __init__(
        self,
        *,
        timeouts: dict[str, float] | None = None,
        retry_delays: tuple[float, ...] = (0.5, 1.0, 2.0),
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client: httpx.AsyncClient | None = None
        self._breakers: dict[str, CircuitBreaker] = {}
        self._timeouts = {**TIMEOUTS, **(timeouts or {})}
        self._retry_delays = retry_delays or (0.0,)
        self._transport = transport

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def timeout(self, timeout_type: str) -> float:
        return self._timeouts.get(timeout_type, self._timeouts["default"])

    def _breaker(self, backend: str) -> CircuitBreaker:
        if backend not in self._breakers:
            self._breakers[backend] = CircuitBreaker()
        return self._breakers[backend]

    def _require_client(self) -> httpx.AsyncClient:
        """Return initialized client or raise a clear runtime error."""
        if self._client is None:
            raise RuntimeError("Backend client is not started")
        return self._client

    async def request(
        self,
        backend_name: str,
        method: str,
        url: str,
        *,
        timeout_type: str = "default",
        max_retries: int = 3,
        **kwargs,
    ) -> httpx.Response:
        """Send request with retry + circuit breaker.

        Only connection failures are retried; any HTTP status is returned to
        the caller as-is.
        """
        breaker = self._breaker(backend_name)
        if not breaker.allow_request():
            raise httpx.ConnectError(
                f"Circuit breaker open for {backend_name}"
            )

        timeout = self.timeout(timeout_type)
        delays = self._retry_delays
        attempts = max(1, max_retries)

        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                resp = await self._require_client().request(
                    method, url, timeout=timeout, **kwargs
                )
                breaker.record_success()
                return resp
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_exc = e
                breaker.record_failure()
                if attempt < attempts - 1:
                    delay = delays[min(attempt, len(delays) - 1)]
                    logger.warning(
                        "%s attempt %d failed: %s (retry in %.1fs)",
                        backend_name, attempt + 1, e, delay,
                    )
                    await asyncio.sleep(delay)

        raise last_exc

    async def probe(self, url: str) -> bool:
        """Liveness check: True only for a 2xx answer within the probe timeout."""
        try:
            resp = await self._require_client().get(url, timeout=self.timeout("probe"))
        except Exception as e:
            logger.debug("Probe %s failed: %s", url, e)
            return False
        return resp.is_success
