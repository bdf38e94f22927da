"""MioVo local bridge: one WebSocket per browser client, fanned out to the
synthesis (VOICEVOX) and conversion (RVC) backends."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from . import __version__
from .backend_client import BackendClient
from .config import (
    CONVERSION_BACKEND,
    SYNTHESIS_BACKEND,
    Settings,
    get_backend_url,
    get_health_url,
    load_backends_config,
)
from .config import settings as default_settings
from .conversion_gateway import ConversionGateway
from .lifecycle import LifecycleManager
from .registry import ConnectionRegistry
from .router import RequestRouter
from .status import StatusBroadcaster
from .storage import TrainingDataStorage
from .synthesis_gateway import SynthesisGateway
from .tasks import BackgroundTasks
from .training import TrainingJobManager

logger = logging.getLogger(__name__)


def build_lifecycle(cfg: Settings, client: BackendClient, backends: dict | None = None) -> LifecycleManager:
    """Wire registry, gateways, router and broadcaster for one server instance."""
    if backends is None:
        backends = load_backends_config(cfg)
    logger.info(
        "Backends: synthesis=%s conversion=%s",
        get_backend_url(backends, SYNTHESIS_BACKEND),
        get_backend_url(backends, CONVERSION_BACKEND),
    )

    registry = ConnectionRegistry()
    tasks = BackgroundTasks()
    storage = TrainingDataStorage(cfg.upload_dir, cfg.models_dir)
    jobs = TrainingJobManager(
        tasks,
        tick_seconds=cfg.training_tick_seconds,
        epoch_step=cfg.training_epoch_step,
    )
    synthesis = SynthesisGateway(
        client,
        get_backend_url(backends, SYNTHESIS_BACKEND),
        default_speaker_id=cfg.default_speaker_id,
    )
    conversion = ConversionGateway(
        client,
        get_backend_url(backends, CONVERSION_BACKEND),
        storage=storage,
        jobs=jobs,
        tasks=tasks,
        mode=cfg.conversion_mode,
        max_upload_bytes=cfg.max_upload_bytes,
        upload_complete_delay=cfg.upload_complete_delay_seconds,
        enforce_training_data_refs=cfg.enforce_training_data_refs,
    )
    broadcaster = StatusBroadcaster(
        registry=registry,
        client=client,
        synthesis_health_url=get_health_url(backends, SYNTHESIS_BACKEND),
        conversion_health_url=get_health_url(backends, CONVERSION_BACKEND),
        interval=cfg.status_interval_seconds,
    )
    return LifecycleManager(
        registry=registry,
        router=RequestRouter(synthesis, conversion),
        broadcaster=broadcaster,
        tasks=tasks,
        storage=storage,
        cleanup_uploads=cfg.cleanup_uploads_on_shutdown,
    )


def create_app(cfg: Settings | None = None, client: BackendClient | None = None) -> FastAPI:
    cfg = cfg or default_settings
    client = client or BackendClient(
        timeouts={
            "probe": cfg.probe_timeout_seconds,
            "synthesis": cfg.synthesis_timeout_seconds,
            "passthrough": cfg.passthrough_timeout_seconds,
            "conversion": cfg.conversion_timeout_seconds,
        }
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: wire components, open the httpx pool, start the broadcaster."""
        logging.basicConfig(
            level=getattr(logging, cfg.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        backends = load_backends_config(cfg)
        lifecycle = build_lifecycle(cfg, client, backends)
        app.state.backends = backends
        app.state.lifecycle = lifecycle
        await client.start()
        lifecycle.broadcaster.start()
        logger.info("Bridge server ready on port %d", cfg.port)

        yield

        await lifecycle.shutdown()
        await client.stop()
        logger.info("Bridge server stopped")

    app = FastAPI(title="MioVo Local Bridge", version=__version__, lifespan=lifespan)
    app.state.settings = cfg

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health(request: Request):
        lifecycle: LifecycleManager = request.app.state.lifecycle
        backends = request.app.state.backends
        latest = lifecycle.broadcaster.latest
        return {
            "status": "running" if lifecycle.accepting else "shutting-down",
            "version": __version__,
            "services": {
                SYNTHESIS_BACKEND: get_backend_url(backends, SYNTHESIS_BACKEND),
                CONVERSION_BACKEND: get_backend_url(backends, CONVERSION_BACKEND),
            },
            "connections": len(lifecycle.registry),
            "backends": latest.to_wire() if latest else None,
        }

    @app.websocket("/ws")
    async def bridge_socket(websocket: WebSocket):
        await websocket.app.state.lifecycle.serve(websocket)

    # older browser clients connect to the bare origin
    app.add_api_websocket_route("/", bridge_socket)

    return app


class BridgeServer(uvicorn.Server):
    """Sends the shutdown notice before uvicorn drops open WebSockets."""

    def __init__(self, config: uvicorn.Config, bridge_app: FastAPI) -> None:
        super().__init__(config)
        self._bridge_app = bridge_app

    async def shutdown(self, sockets=None) -> None:
        lifecycle = getattr(self._bridge_app.state, "lifecycle", None)
        if lifecycle is not None:
            await lifecycle.notify_shutdown()
        await super().shutdown(sockets=sockets)


# room for the JSON envelope around a base64 upload
FRAME_ENVELOPE_BYTES = 64 * 1024


def ws_max_frame_bytes(cfg: Settings) -> int:
    """Largest inbound frame: a max-size upload, base64-encoded, plus its envelope."""
    encoded = 4 * ((cfg.max_upload_bytes + 2) // 3)
    return encoded + FRAME_ENVELOPE_BYTES


def build_server(cfg: Settings, bridge_app: FastAPI) -> BridgeServer:
    config = uvicorn.Config(
        bridge_app,
        host=cfg.host,
        port=cfg.port,
        ws_max_size=ws_max_frame_bytes(cfg),
    )
    return BridgeServer(config, bridge_app)


app = create_app()


def run() -> None:
    build_server(default_settings, app).run()
