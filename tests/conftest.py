import asyncio
import io
import json
import wave

import httpx
import pytest
import pytest_asyncio
from fastapi.websockets import WebSocketState

from miovo_bridge.backend_client import BackendClient
from miovo_bridge.registry import Connection

SYNTHESIS_URL = "http://voicevox.test"
CONVERSION_URL = "http://rvc.test"

SPEAKERS = [
    {
        "name": "ずんだもん",
        "speaker_uuid": "388f246b-8c41-4ac1-8e2d-5d79f3ff56d9",
        "styles": [{"id": 3, "name": "ノーマル"}],
        "version": "0.14.0",
    }
]


def make_wav(seconds: float = 0.5, rate: int = 8000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(b"\x00\x00" * int(seconds * rate))
    return buf.getvalue()


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records every frame sent to it."""

    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.client = None
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self._incoming: asyncio.Queue[dict] = asyncio.Queue()

    async def accept(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED
        self.client_state = WebSocketState.DISCONNECTED

    async def receive(self) -> dict:
        return await self._incoming.get()

    def feed(self, text: str) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def hang_up(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def of_type(self, type_: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == type_]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class VoicevoxStub:
    """MockTransport handler imitating the synthesis and conversion backends."""

    def __init__(self, *, synthesis_up: bool = True, conversion_up: bool = True) -> None:
        self.synthesis_up = synthesis_up
        self.conversion_up = conversion_up
        self.requests: list[httpx.Request] = []
        self.audio = make_wav()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path
        if host == "rvc.test":
            if not self.conversion_up:
                raise httpx.ConnectError("Connection refused", request=request)
            if path == "/health":
                return httpx.Response(200, json={"status": "ok"})
            if path == "/convert":
                body = json.loads(request.content)
                return httpx.Response(200, json={"convertedAudio": body["inputAudio"], "duration": 1.25})
            return httpx.Response(404, json={"detail": "Not Found"})

        if not self.synthesis_up:
            raise httpx.ConnectError("Connection refused", request=request)
        if path in ("", "/"):
            return httpx.Response(200, text="VOICEVOX Engine")
        if path == "/speakers":
            return httpx.Response(200, json=SPEAKERS)
        if path == "/version":
            return httpx.Response(200, json="0.14.0")
        if path == "/audio_query":
            return httpx.Response(
                200,
                json={"accent_phrases": [], "speedScale": 1.0, "pitchScale": 0.0, "volumeScale": 1.0},
            )
        if path == "/synthesis":
            return httpx.Response(200, content=self.audio, headers={"content-type": "audio/wav"})
        return httpx.Response(404, json={"detail": "Not Found"})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def stub() -> VoicevoxStub:
    return VoicevoxStub()


def make_client(stub) -> BackendClient:
    return BackendClient(transport=httpx.MockTransport(stub), retry_delays=(0.0,))


@pytest_asyncio.fixture
async def backend(stub):
    client = make_client(stub)
    await client.start()
    yield client
    await client.stop()


@pytest.fixture
def websocket() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def conn(websocket) -> Connection:
    return Connection(websocket, peer="test")
