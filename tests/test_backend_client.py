import httpx
import pytest

from miovo_bridge.backend_client import BackendClient, CircuitBreaker


async def test_probe_true_for_2xx(backend):
    assert await backend.probe("http://voicevox.test") is True
    assert await backend.probe("http://rvc.test/health") is True


async def test_probe_false_for_non_2xx(backend):
    assert await backend.probe("http://rvc.test/missing") is False


async def test_probe_false_when_refused(stub, backend):
    stub.synthesis_up = False
    assert await backend.probe("http://voicevox.test") is False


async def test_probe_false_on_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = BackendClient(transport=httpx.MockTransport(handler))
    await client.start()
    try:
        assert await client.probe("http://voicevox.test") is False
    finally:
        await client.stop()


async def test_request_retries_connect_errors_then_raises():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    client = BackendClient(transport=httpx.MockTransport(handler), retry_delays=(0.0,))
    await client.start()
    try:
        with pytest.raises(httpx.ConnectError):
            await client.request("conversion", "GET", "http://rvc.test/health", max_retries=3)
    finally:
        await client.stop()
    assert len(calls) == 3


async def test_request_returns_error_status_without_retry(stub, backend):
    resp = await backend.request("synthesis", "GET", "http://voicevox.test/nope")
    assert resp.status_code == 404
    assert stub.paths() == ["/nope"]


async def test_request_requires_start():
    client = BackendClient()
    with pytest.raises(RuntimeError):
        await client.request("synthesis", "GET", "http://voicevox.test/")


def test_timeouts_override_defaults():
    client = BackendClient(timeouts={"probe": 0.5})
    assert client.timeout("probe") == 0.5
    assert client.timeout("passthrough") == 30.0
    assert client.timeout("unknown") == 30.0


def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker(threshold=2, cooldown=60.0)
    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()
    breaker.record_success()
    assert breaker.allow_request()
