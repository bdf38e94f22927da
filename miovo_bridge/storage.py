"""Training data storage on the local filesystem.

Uploads land in ``upload_dir`` as ``{upload_id}_{file_name}``; trained model
artifacts are addressed under ``models_dir``. Nothing here is durable: the
upload directory is removed when the bridge shuts down.
"""

import asyncio
import base64
import binascii
import io
import logging
import os
import shutil
import uuid
import wave

import aiofiles

from .errors import CallerError, StorageError
from .models import UploadRecord

logger = logging.getLogger(__name__)


def validate_file_name(file_name: str) -> str:
    """Reduce a client-supplied file name to a safe basename.

    Rejects names that are empty after stripping directories or that contain
    NUL bytes, so uploads can never escape the upload directory.
    """
    if "\x00" in file_name:
        raise CallerError(f"Invalid file name: {file_name!r}")
    name = os.path.basename(file_name.replace("\\", "/")).strip()
    if not name or name in (".", ".."):
        raise CallerError(f"Invalid file name: {file_name!r}")
    return name


def decode_base64_payload(payload: str) -> bytes:
    """Decode raw base64 or a ``data:<type>;base64,<data>`` URI."""
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CallerError(f"File data is not valid base64: {e}") from e


def wav_duration(data: bytes) -> float:
    """Duration of an in-memory WAV file in seconds, 0.0 if it is not a WAV."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            frames = wf.getnframes()
            rate = wf.getframerate()
            return frames / rate if rate > 0 else 0.0
    except (wave.Error, EOFError):
        return 0.0


class TrainingDataStorage:
    """Writes uploaded training files and tracks them by upload id."""

    def __init__(self, upload_dir: str, models_dir: str) -> None:
        self.upload_dir = os.path.abspath(upload_dir)
        self.models_dir = os.path.abspath(models_dir)
        self._records: dict[str, UploadRecord] = {}
        os.makedirs(self.upload_dir, exist_ok=True)
        os.makedirs(self.models_dir, exist_ok=True)

    def __contains__(self, upload_id: str) -> bool:
        return upload_id in self._records

    def get(self, upload_id: str) -> UploadRecord | None:
        return self._records.get(upload_id)

    def missing(self, upload_ids: list[str]) -> list[str]:
        return [i for i in upload_ids if i not in self._records]

    async def save(self, file_name: str, data: bytes) -> UploadRecord:
        """Write ``data`` and register it. A failed write leaves no file behind."""
        safe_name = validate_file_name(file_name)
        upload_id = str(uuid.uuid4())
        path = os.path.join(self.upload_dir, f"{upload_id}_{safe_name}")

        try:
            os.makedirs(self.upload_dir, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            try:
                os.remove(path)
            except OSError:
                pass
            raise StorageError(str(e)) from e

        record = UploadRecord(
            upload_id=upload_id,
            file_name=safe_name,
            storage_path=path,
            file_size=len(data),
        )
        self._records[upload_id] = record
        logger.info("Stored upload %s (%s, %d bytes)", upload_id, safe_name, len(data))
        return record

    async def read(self, upload_id: str) -> bytes:
        record = self._records.get(upload_id)
        if record is None:
            raise StorageError(f"Unknown upload: {upload_id}")
        try:
            async with aiofiles.open(record.storage_path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(str(e)) from e

    async def duration(self, upload_id: str) -> float:
        data = await self.read(upload_id)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, wav_duration, data)

    def model_path(self, model_id: str) -> str:
        return os.path.join(self.models_dir, f"{model_id}.pth")

    def cleanup(self) -> None:
        """Best-effort removal of everything uploaded during this run."""
        shutil.rmtree(self.upload_dir, ignore_errors=True)
        self._records.clear()
        logger.info("Removed upload directory %s", self.upload_dir)
