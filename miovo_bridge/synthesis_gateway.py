"""Synthesis backend gateway (VOICEVOX-compatible engine).

VOICEVOX synthesizes in two steps:
  1. POST /audio_query?text=...&speaker=N  -> query object (JSON)
  2. POST /synthesis?speaker=N with the query as body -> WAV bytes

The speaker catalog and synthesis degrade to built-in mock data when the
engine is unreachable; the raw passthrough surfaces backend failures.
"""

import logging
from typing import Any

import httpx

from .backend_client import BackendClient
from .config import SYNTHESIS_BACKEND
from .errors import BackendError
from .http_utils import error_detail, shape_response_body, status_text, to_data_uri
from .models import PassthroughRequest, SynthesizeRequest

logger = logging.getLogger(__name__)

# header-only silent WAV (8 kHz mono, no frames) returned when the engine is down
SILENT_WAV_BASE64 = "UklGRiQAAABXQVZFZm10IBAAAAABAAEAQB8AAAB9AAACABAAZGF0YQAAAAA="

FALLBACK_SPEAKERS = [
    {
        "speaker_id": 0,
        "name": "Default",
        "speaker_uuid": "default-uuid",
        "styles": [{"id": 0, "name": "ノーマル"}],
    },
    {
        "speaker_id": 1,
        "name": "Female",
        "speaker_uuid": "female-uuid",
        "styles": [{"id": 1, "name": "ノーマル"}],
    },
    {
        "speaker_id": 2,
        "name": "Male",
        "speaker_uuid": "male-uuid",
        "styles": [{"id": 2, "name": "ノーマル"}],
    },
]

_BODY_METHODS = {"POST", "PUT", "PATCH"}


class SynthesisGateway:
    def __init__(self, client: BackendClient, base_url: str, *, default_speaker_id: int = 3) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._default_speaker_id = default_speaker_id

    async def list_speakers(self) -> tuple[Any, bool]:
        """Return ``(catalog, is_mock)``. Never raises for backend trouble."""
        try:
            resp = await self._client.request(
                SYNTHESIS_BACKEND, "GET", f"{self._base_url}/speakers",
                timeout_type="synthesis",
                max_retries=1,
            )
            resp.raise_for_status()
            return resp.json(), False
        except (httpx.HTTPError, ValueError) as e:
            logger.info("Synthesis backend not available, returning mock speakers: %s", e)
            return [dict(s) for s in FALLBACK_SPEAKERS], True

    async def synthesize(self, req: SynthesizeRequest) -> dict:
        speaker = req.speaker_id if req.speaker_id is not None else self._default_speaker_id
        data = {"text": req.text, "speaker_id": speaker}
        try:
            audio = await self._synthesize_wav(req, speaker)
        except (httpx.HTTPError, ValueError) as e:
            logger.info("Synthesis backend not available, returning mock audio: %s", e)
            return {**data, "audio": f"data:audio/wav;base64,{SILENT_WAV_BASE64}", "mock": True}
        return {**data, "audio": to_data_uri(audio, "audio/wav")}

    async def _synthesize_wav(self, req: SynthesizeRequest, speaker: int) -> bytes:
        query_resp = await self._client.request(
            SYNTHESIS_BACKEND, "POST", f"{self._base_url}/audio_query",
            params={"text": req.text, "speaker": speaker},
            timeout_type="synthesis",
            max_retries=1,
        )
        query_resp.raise_for_status()
        query = query_resp.json()
        if req.params is not None:
            query = req.params.apply_to(query)

        synth_resp = await self._client.request(
            SYNTHESIS_BACKEND, "POST", f"{self._base_url}/synthesis",
            params={"speaker": speaker},
            json=query,
            timeout_type="synthesis",
            max_retries=1,
        )
        synth_resp.raise_for_status()
        return synth_resp.content

    async def passthrough(self, req: PassthroughRequest) -> Any:
        """Forward a request verbatim; raise BackendError on any failure."""
        url = f"{self._base_url}{req.endpoint}"
        logger.info("Synthesis passthrough: %s %s", req.method, url)

        kwargs: dict[str, Any] = {}
        if req.params:
            kwargs["params"] = req.params
        if req.body is not None and req.method in _BODY_METHODS:
            kwargs["json"] = req.body

        try:
            resp = await self._client.request(
                SYNTHESIS_BACKEND, req.method, url,
                timeout_type="passthrough",
                max_retries=1,
                **kwargs,
            )
        except httpx.HTTPError as e:
            logger.warning("Synthesis passthrough %s %s failed: %s", req.method, url, e)
            raise BackendError(f"Synthesis backend error: {str(e) or type(e).__name__}") from e

        if not resp.is_success:
            raise BackendError(
                f"Synthesis backend error: {status_text(resp)}",
                details=error_detail(resp),
            )
        return shape_response_body(resp)
