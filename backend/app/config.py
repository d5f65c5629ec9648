"""Chatreel application configuration.

Loads settings from a single YAML file:
  * chatreel.settings.yaml  — non-secret configuration

The path can be overridden with the ``CHATREEL_SETTINGS_PATH`` environment
variable.  Relative directories in the ``recordings`` section are resolved
against the project root when the settings file lives in a ``config/``
directory, otherwise against the settings file's own directory.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatreel.settings.yaml")
SETTINGS_ENV_VAR = "CHATREEL_SETTINGS_PATH"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_base_dir(settings_path: Path) -> Path:
    """Directory that relative paths in the settings file are resolved from."""
    settings_dir = settings_path.resolve().parent
    if settings_dir.name == "config":
        return settings_dir.parent
    return settings_dir


def _resolve_path(value: str, base_dir: Path) -> str:
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if getattr(logging, value.upper(), None) is None:
            raise ValueError(f"Unknown log level: {value!r}")
        return value


class RecordingSettings(BaseModel):
    """Chunked recording upload settings."""
    staging_dir:                str = "./uploads/recording-chunks"
    recordings_dir:             str = "./uploads/recordings"
    db_path:                    str = "./recordings.duckdb"
    max_chunk_bytes:            int = Field(default=50 * 1024 * 1024, gt=0)
    recommended_chunk_seconds:  int = 300
    stream_session_ttl_seconds: int = Field(default=3600, gt=0)
    long_session_ttl_seconds:   int = Field(default=86400, gt=0)
    sweep_interval_seconds:     int = Field(default=300, gt=0)
    completed_cache_size:       int = Field(default=256, ge=0)


class AppConfig(BaseModel):
    server:     ServerSettings    = Field(default_factory=ServerSettings)
    logging:    LoggingSettings   = Field(default_factory=LoggingSettings)
    recordings: RecordingSettings = Field(default_factory=RecordingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML into an *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, str(SETTINGS_FILE)))
    settings_path = Path(settings_path)

    data = _load_yaml(settings_path)
    config = AppConfig(**data)

    base_dir = _resolve_base_dir(settings_path)
    rec = config.recordings
    rec.staging_dir    = _resolve_path(rec.staging_dir, base_dir)
    rec.recordings_dir = _resolve_path(rec.recordings_dir, base_dir)
    rec.db_path        = _resolve_path(rec.db_path, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, staging_dir=%s, recordings_dir=%s)",
        config.server.host,
        config.server.port,
        rec.staging_dir,
        rec.recordings_dir,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (for testing)."""
    global _config
    _config = None
