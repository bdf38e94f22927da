"""Inbound message dispatch.

Every frame becomes its own task, started in receipt order. Handlers return the
correlated reply (or send it themselves when pushes must follow it); every
failure is turned into a single ``error`` reply at this boundary.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from .conversion_gateway import ConversionGateway
from .errors import BridgeError, StorageError
from .models import (
    ConvertVoiceRequest,
    Message,
    PassthroughRequest,
    StartTrainingRequest,
    SynthesizeRequest,
    UploadTrainingDataRequest,
    error_message,
    reply,
)
from .registry import Connection
from .synthesis_gateway import SynthesisGateway

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Message], Awaitable[Message | None]]

# request type used by the first MioVo web clients -> (handler type, outbound type renames)
LEGACY_TYPES: dict[str, tuple[str, dict[str, str]]] = {
    "voicevox-speakers": ("list-voices", {"voices-response": "voicevox-speakers-response"}),
    "voicevox-synthesis": ("synthesize", {"synthesis-response": "voicevox-synthesis-response"}),
    "rvc-upload-training-data": (
        "upload-training-data",
        {"upload-response": "rvc-upload-response", "processing-complete": "rvc-processing-complete"},
    ),
    "rvc-start-training": (
        "start-training",
        {
            "training-started": "rvc-training-started",
            "training-progress": "rvc-training-progress",
            "training-complete": "rvc-training-complete",
        },
    ),
    "rvc-voice-conversion": ("convert-voice", {"conversion-response": "rvc-conversion-response"}),
    "voicevox_request": ("raw-backend-request", {"passthrough-response": "voicevox_request-response"}),
}


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "data"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class RenamedConnection:
    """View of a Connection that rewrites the type of every outbound message in ``renames``."""

    def __init__(self, conn: Connection, renames: dict[str, str]) -> None:
        self._conn = conn
        self._renames = renames

    @property
    def id(self) -> str:
        return self._conn.id

    @property
    def is_open(self) -> bool:
        return self._conn.is_open

    async def send(self, message: Message) -> bool:
        renamed = self._renames.get(message.type)
        if renamed is not None:
            message = message.model_copy(update={"type": renamed})
        return await self._conn.send(message)


def parse_message(raw: str) -> Message:
    """Parse one inbound frame; raises BridgeError carrying whatever requestId was readable."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise BridgeError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise BridgeError("Message must be a JSON object")
    request_id = payload.get("requestId")
    if not isinstance(payload.get("type"), str) or not payload["type"]:
        raise BridgeError("Message type is missing", details={"requestId": request_id})
    try:
        return Message.model_validate(payload)
    except ValidationError as e:
        raise BridgeError(
            f"Invalid message: {format_validation_error(e)}", details={"requestId": request_id}
        ) from e


class RequestRouter:
    def __init__(self, synthesis: SynthesisGateway, conversion: ConversionGateway) -> None:
        self._synthesis = synthesis
        self._conversion = conversion
        self._inflight: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "ping": self.handle_ping,
            "list-voices": self.handle_list_voices,
            "synthesize": self.handle_synthesize,
            "upload-training-data": self.handle_upload_training_data,
            "start-training": self.handle_start_training,
            "convert-voice": self.handle_convert_voice,
            "raw-backend-request": self.handle_raw_backend_request,
        }

    @property
    def message_types(self) -> list[str]:
        return sorted([*self._handlers, *LEGACY_TYPES])

    def submit(self, conn: Connection, raw: str) -> asyncio.Task:
        """Schedule processing of one frame without blocking the receive loop."""
        task = asyncio.create_task(self.process(conn, raw))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def process(self, conn: Connection, raw: str) -> None:
        try:
            request = parse_message(raw)
        except BridgeError as e:
            request_id = e.details.get("requestId") if isinstance(e.details, dict) else None
            logger.warning("Rejected frame from %s: %s", conn.id, e.message)
            await conn.send(error_message(e.message, request_id))
            return

        logger.info("Request from %s: %s", conn.id, request.type)
        target = conn
        legacy = LEGACY_TYPES.get(request.type)
        if legacy is not None:
            handler_type, renames = legacy
            target = RenamedConnection(conn, renames)
            request = request.model_copy(update={"type": handler_type})
        response = await self.dispatch(target, request)
        if response is not None:
            await target.send(response)

    async def dispatch(self, conn: Connection, request: Message) -> Message | None:
        handler = self._handlers.get(request.type)
        if handler is None:
            return error_message(f"Unknown request type: {request.type}", request.request_id)
        try:
            return await handler(conn, request)
        except ValidationError as e:
            return error_message(
                f"Invalid {request.type} request: {format_validation_error(e)}",
                request.request_id,
            )
        except StorageError as e:
            logger.error("Storage failure for %s: %s", request.type, e.message)
            return error_message(f"File upload error: {e.message}", request.request_id)
        except BridgeError as e:
            return error_message(e.message, request.request_id, e.details)
        except Exception as e:
            logger.exception("Unhandled error in %s handler", request.type)
            return error_message(f"Message handling error: {e}", request.request_id)

    async def cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- Handlers ---

    async def handle_ping(self, conn: Connection, request: Message) -> Message:
        return reply(request, "pong", {"timestamp": int(time.time() * 1000)})

    async def handle_list_voices(self, conn: Connection, request: Message) -> Message:
        catalog, is_mock = await self._synthesis.list_speakers()
        return reply(request, "voices-response", catalog, mock=True if is_mock else None)

    async def handle_synthesize(self, conn: Connection, request: Message) -> Message:
        req = SynthesizeRequest.model_validate(request.data or {})
        return reply(request, "synthesis-response", await self._synthesis.synthesize(req))

    async def handle_upload_training_data(self, conn: Connection, request: Message) -> None:
        req = UploadTrainingDataRequest.model_validate(request.data or {})
        record = await self._conversion.upload_training_data(req)
        await conn.send(
            reply(
                request,
                "upload-response",
                {**record.model_dump(by_alias=True), "status": "processing"},
            )
        )
        if conn.is_open:
            self._conversion.schedule_processing_complete(conn.id, record, conn.send)

    async def handle_start_training(self, conn: Connection, request: Message) -> None:
        req = StartTrainingRequest.model_validate(request.data or {})
        job = self._conversion.prepare_training(conn.id, req)
        await conn.send(
            reply(
                request,
                "training-started",
                {
                    "modelId": job.job_id,
                    "modelName": job.model_name,
                    "status": job.state,
                    "totalEpochs": job.total_epochs,
                },
            )
        )
        # no ticks for a client that left while the reply was in flight
        if conn.is_open:
            self._conversion.jobs.start(job, conn.send)

    async def handle_convert_voice(self, conn: Connection, request: Message) -> Message:
        req = ConvertVoiceRequest.model_validate(request.data or {})
        return reply(request, "conversion-response", await self._conversion.convert(req))

    async def handle_raw_backend_request(self, conn: Connection, request: Message) -> Message:
        data = request.data or {}
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            data = data["payload"]
        req = PassthroughRequest.model_validate(data)
        return reply(request, "passthrough-response", await self._synthesis.passthrough(req))
