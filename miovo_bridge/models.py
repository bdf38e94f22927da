import json
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

logger = logging.getLogger(__name__)

# --- Wire envelope ---


class Message(BaseModel):
    """One JSON frame on the WebSocket, in either direction."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    data: Any = None
    request_id: Any = Field(default=None, alias="requestId")
    error: str | None = None
    details: Any = None
    mock: bool | None = None

    def to_json(self) -> str:
        payload = {
            k: v for k, v in self.model_dump(mode="json", by_alias=True).items() if v is not None
        }
        return json.dumps(payload, ensure_ascii=False)


def reply(request: Message, type_: str, data: Any = None, **extra: Any) -> Message:
    """Build a reply correlated to ``request`` by its requestId."""
    return Message(type=type_, data=data, request_id=request.request_id, **extra)


def push(type_: str, data: Any = None) -> Message:
    """Build an uncorrelated push message."""
    return Message(type=type_, data=data)


def error_message(error: str, request_id: Any = None, details: Any = None) -> Message:
    return Message(type="error", error=error, request_id=request_id, details=details)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- Synthesis ---


class SynthesisParams(BaseModel):
    """Partial update applied to the backend's audio query, field by field.

    Unknown keys are dropped (and logged); known keys are range-checked.
    """

    model_config = ConfigDict(extra="ignore")

    speedScale: float | None = Field(default=None, ge=0.5, le=2.0)
    pitchScale: float | None = Field(default=None, ge=-0.15, le=0.15)
    intonationScale: float | None = Field(default=None, ge=0.0, le=2.0)
    volumeScale: float | None = Field(default=None, ge=0.0, le=2.0)
    prePhonemeLength: float | None = Field(default=None, ge=0.0, le=1.5)
    postPhonemeLength: float | None = Field(default=None, ge=0.0, le=1.5)
    pauseLengthScale: float | None = Field(default=None, ge=0.0, le=2.0)
    outputSamplingRate: int | None = Field(default=None, ge=8000, le=48000)
    outputStereo: bool | None = None

    @model_validator(mode="before")
    @classmethod
    def log_unknown_keys(cls, values: Any) -> Any:
        if isinstance(values, dict):
            unknown = sorted(k for k in values if k not in cls.model_fields)
            if unknown:
                logger.info("Ignoring unknown synthesis params: %s", ", ".join(map(str, unknown)))
        return values

    def apply_to(self, query: dict) -> dict:
        merged = dict(query)
        for key, value in self.model_dump(exclude_none=True).items():
            merged[key] = value
        return merged


class SynthesizeRequest(_Request):
    text: str = Field(..., min_length=1, max_length=5000)
    speaker_id: int | None = None
    params: SynthesisParams | None = None


class PassthroughRequest(_Request):
    endpoint: str = Field(..., min_length=1)
    method: str = "GET"
    body: Any = None
    params: dict[str, Any] | None = None

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if "://" in v:
            raise ValueError("endpoint must be a path on the synthesis backend")
        return v if v.startswith("/") else f"/{v}"

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        method = v.upper()
        if method not in {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}:
            raise ValueError(f"Unsupported method: {v}")
        return method


# --- Conversion / training ---


class UploadTrainingDataRequest(_Request):
    file_name: str = Field(..., alias="fileName", min_length=1, max_length=255)
    file_data: str = Field(..., alias="fileData", min_length=1)
    file_size: int | None = Field(default=None, alias="fileSize", ge=0)


class UploadRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="id")
    file_name: str = Field(..., alias="fileName")
    storage_path: str = Field(..., alias="filePath")
    file_size: int = Field(..., alias="fileSize")


class StartTrainingRequest(_Request):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    model_name: str = Field(..., alias="modelName", min_length=1)
    training_data_ids: list[str] = Field(default_factory=list, alias="trainingDataIds")
    epochs: StrictInt = Field(..., gt=0)
    params: dict[str, Any] | None = None


class ConvertVoiceRequest(_Request):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    input_audio: str = Field(..., alias="inputAudio", min_length=1)
    model_id: str = Field(..., alias="modelId", min_length=1)
    params: dict[str, Any] | None = None


# --- Status ---


class BackendStatusSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    synthesis_backend_up: bool = Field(..., alias="synthesisBackendUp")
    conversion_backend_up: bool = Field(..., alias="conversionBackendUp")
    observed_at: datetime = Field(..., alias="observedAt")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
