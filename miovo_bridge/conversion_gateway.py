"""Conversion backend gateway (RVC-compatible engine): uploads, training, conversion.

Training is always simulated in-process. Conversion is answered in-process in
``mock`` mode and forwarded to ``POST /convert`` in ``remote`` mode.
"""

import asyncio
import logging

import httpx

from .backend_client import BackendClient
from .config import CONVERSION_BACKEND
from .errors import BackendError, CallerError
from .http_utils import error_detail, status_text
from .models import (
    ConvertVoiceRequest,
    StartTrainingRequest,
    UploadRecord,
    UploadTrainingDataRequest,
    push,
)
from .storage import TrainingDataStorage, decode_base64_payload, wav_duration
from .tasks import BackgroundTasks
from .training import Notify, TrainingJob, TrainingJobManager

logger = logging.getLogger(__name__)


class ConversionGateway:
    def __init__(
        self,
        client: BackendClient,
        base_url: str,
        *,
        storage: TrainingDataStorage,
        jobs: TrainingJobManager,
        tasks: BackgroundTasks,
        mode: str = "mock",
        max_upload_bytes: int = 100 * 1024 * 1024,
        upload_complete_delay: float = 2.0,
        enforce_training_data_refs: bool = False,
    ) -> None:
        mode = mode.strip().lower()
        if mode not in ("mock", "remote"):
            raise ValueError(f"Unknown conversion mode: {mode!r}")
        self._client = client
        self._base_url = base_url.rstrip("/")
        self.storage = storage
        self.jobs = jobs
        self._tasks = tasks
        self._mode = mode
        self._max_upload_bytes = max_upload_bytes
        self._upload_complete_delay = upload_complete_delay
        self._enforce_refs = enforce_training_data_refs

    # --- Training data ---

    async def upload_training_data(self, req: UploadTrainingDataRequest) -> UploadRecord:
        data = decode_base64_payload(req.file_data)
        if len(data) > self._max_upload_bytes:
            raise CallerError(
                f"File too large: {len(data)} bytes (max {self._max_upload_bytes})"
            )
        if req.file_size is not None and req.file_size != len(data):
            raise CallerError(
                f"fileSize mismatch: declared {req.file_size}, received {len(data)} bytes"
            )
        return await self.storage.save(req.file_name, data)

    def schedule_processing_complete(self, owner: str, record: UploadRecord, notify: Notify) -> asyncio.Task:
        return self._tasks.spawn(
            owner,
            self._processing_complete(record, notify),
            name=f"upload-{record.upload_id}",
        )

    async def _processing_complete(self, record: UploadRecord, notify: Notify) -> None:
        await asyncio.sleep(self._upload_complete_delay)
        duration = await self.storage.duration(record.upload_id)
        await notify(
            push(
                "processing-complete",
                {
                    "id": record.upload_id,
                    "fileName": record.file_name,
                    "status": "ready",
                    "duration": duration,
                },
            )
        )

    # --- Training ---

    def prepare_training(self, owner: str, req: StartTrainingRequest) -> TrainingJob:
        """Validate references and build a job; the caller starts it with ``jobs.start``."""
        if self._enforce_refs:
            missing = self.storage.missing(req.training_data_ids)
            if missing:
                raise CallerError(f"Unknown training data ids: {', '.join(missing)}")
        job = TrainingJob(model_name=req.model_name, total_epochs=req.epochs, owner=owner)
        job.model_path = self.storage.model_path(job.job_id)
        return job

    # --- Conversion ---

    async def convert(self, req: ConvertVoiceRequest) -> dict:
        if self._mode == "mock":
            return self._mock_convert(req)

        url = f"{self._base_url}/convert"
        try:
            resp = await self._client.request(
                CONVERSION_BACKEND, "POST", url,
                json={"inputAudio": req.input_audio, "modelId": req.model_id, "params": req.params or {}},
                timeout_type="conversion",
            )
        except httpx.HTTPError as e:
            logger.warning("Voice conversion via %s failed: %s", url, e)
            raise BackendError(f"Conversion backend error: {str(e) or type(e).__name__}") from e

        if not resp.is_success:
            raise BackendError(
                f"Conversion backend error: {status_text(resp)}",
                details=error_detail(resp),
            )
        try:
            result = resp.json()
        except ValueError as e:
            raise BackendError("Conversion backend returned invalid JSON", details=resp.text[:1000]) from e
        if not isinstance(result, dict):
            raise BackendError("Conversion backend returned an unexpected payload", details=result)
        return {**result, "modelId": req.model_id}

    @staticmethod
    def _mock_convert(req: ConvertVoiceRequest) -> dict:
        try:
            duration = wav_duration(decode_base64_payload(req.input_audio))
        except CallerError:
            duration = 0.0
        return {
            "convertedAudio": req.input_audio,
            "modelId": req.model_id,
            "duration": duration,
            "mock": True,
        }
