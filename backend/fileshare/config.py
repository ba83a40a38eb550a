"""File share application configuration.

Loads settings from two YAML files:
  * fileshare.settings.yaml: non-secret configuration
  * fileshare.secrets.yaml: secrets (never committed, optional)

The settings path can be overridden with the FILESHARE_SETTINGS environment
variable. Relative storage paths resolve against the directory holding the
settings file so the service behaves the same regardless of the working
directory it is launched from.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("fileshare.settings.yaml")
SECRETS_FILE  = Path("fileshare.secrets.yaml")
SETTINGS_ENV  = "FILESHARE_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    """Reserved for deployment secrets; nothing in the core needs one yet."""
    extra: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class StorageSettings(BaseModel):
    """Blob directory, room database and upload limits."""
    blob_dir:             str = "./data/blobs"
    db_path:              str = "./data/rooms.duckdb"
    max_file_size_bytes:  int = 10 * 1024 * 1024
    chunk_size:           int = 64 * 1024
    max_files_per_upload: int = 20

    @field_validator("max_file_size_bytes", "chunk_size", "max_files_per_upload")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class RoomSettings(BaseModel):
    """Room code format and the two reserved codes."""
    code_length:          int = 6
    permanent_vault_code: str = "RAM123"
    admin_code:           str = "RAMRAM"

    @field_validator("permanent_vault_code", "admin_code")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class CleanupSettings(BaseModel):
    """Expiry sweeper timing."""
    enabled:           bool = True
    interval_seconds:  int  = 60 * 60
    retention_seconds: int  = 24 * 60 * 60


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    rooms:    RoomSettings    = Field(default_factory=RoomSettings)
    cleanup:  CleanupSettings = Field(default_factory=CleanupSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    secrets:  Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_storage_paths(settings: AppSettings, base_dir: Path) -> None:
    storage = settings.storage
    for attr in ("blob_dir", "db_path"):
        value = getattr(storage, attr)
        if value == ":memory:":
            continue
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        setattr(storage, attr, str(path))


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV, SETTINGS_FILE))
    settings_path = Path(settings_path)
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path) if secrets_path.exists() else {}

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    _resolve_storage_paths(app_settings, settings_path.resolve().parent)
    logger.info(
        "Settings loaded (server=%s:%s, blob_dir=%s, db_path=%s, cleanup.enabled=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.blob_dir,
        app_settings.storage.db_path,
        app_settings.cleanup.enabled,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(settings: AppSettings) -> None:
    """Install an explicit settings object (used by tests and embedding apps)."""
    global _config
    _config = settings


def reset_config() -> None:
    global _config
    _config = None
