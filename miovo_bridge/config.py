import os
from pathlib import Path

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

SYNTHESIS_BACKEND = "synthesis"
CONVERSION_BACKEND = "conversion"


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, validation_alias=AliasChoices("BRIDGE_PORT", "PORT"))
    synthesis_url: str = Field(
        default="http://localhost:50021",
        validation_alias=AliasChoices("BRIDGE_SYNTHESIS_URL", "VOICEVOX_URL"),
    )
    conversion_url: str = Field(
        default="http://localhost:10102",
        validation_alias=AliasChoices("BRIDGE_CONVERSION_URL", "RVC_URL"),
    )
    synthesis_health_path: str = ""
    conversion_health_path: str = "/health"
    backends_config_path: str = ""
    log_level: str = "INFO"

    status_interval_seconds: float = 5.0
    probe_timeout_seconds: float = 2.0
    synthesis_timeout_seconds: float = 30.0
    passthrough_timeout_seconds: float = 30.0
    conversion_timeout_seconds: float = 60.0

    # "mock" answers conversions in-process, "remote" forwards them to the conversion backend
    conversion_mode: str = "mock"
    default_speaker_id: int = 3

    upload_dir: str = "uploads"
    models_dir: str = "models"
    max_upload_bytes: int = 100 * 1024 * 1024
    upload_complete_delay_seconds: float = 2.0
    cleanup_uploads_on_shutdown: bool = True

    training_tick_seconds: float = 1.0
    training_epoch_step: int = 10
    enforce_training_data_refs: bool = False

    instance_id: str = os.getenv("HOSTNAME", "miovo-bridge")

    model_config = {"env_prefix": "BRIDGE_", "populate_by_name": True}


settings = Settings()


def load_backends_config(cfg: Settings) -> dict:
    """Build the backend registry from settings, overlaid by an optional YAML file.

    The YAML file has the same shape as the returned dict::

        backends:
          synthesis: {url: http://voicevox:50021, health: /version}
          conversion: {url: http://rvc:10102}
    """
    config = {
        "backends": {
            SYNTHESIS_BACKEND: {"url": cfg.synthesis_url, "health": cfg.synthesis_health_path},
            CONVERSION_BACKEND: {"url": cfg.conversion_url, "health": cfg.conversion_health_path},
        }
    }
    if not cfg.backends_config_path:
        return config

    config_path = Path(cfg.backends_config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Backend config not found: {config_path}")
    with open(config_path) as f:
        loaded = yaml.safe_load(f) or {}

    for name, overrides in (loaded.get("backends") or {}).items():
        if name not in config["backends"] or not isinstance(overrides, dict):
            continue
        config["backends"][name].update(
            {k: v for k, v in overrides.items() if k in ("url", "health") and v is not None}
        )
    return config


def get_backend_url(config: dict, name: str) -> str:
    """Get the base URL for a named backend."""
    backend = config.get("backends", {}).get(name)
    if not backend:
        raise KeyError(f"Backend not found in config: {name}")
    return backend["url"].rstrip("/")


def get_health_url(config: dict, name: str) -> str:
    """Get the liveness URL for a named backend."""
    backend = config["backends"][name]
    return f"{get_backend_url(config, name)}{backend.get('health') or ''}"
