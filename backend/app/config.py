"""LocalBiz chat relay configuration.

Loads settings from a single YAML file:
  * localbiz.settings.yaml  - relay, storage and logging settings

The file location can be overridden with the ``LOCALBIZ_SETTINGS``
environment variable. Missing files fall back to defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("localbiz.settings.yaml")
SETTINGS_ENV_VAR = "LOCALBIZ_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: list = Field(default_factory=lambda: ["*"])


class ChatSettings(BaseModel):
    """Limits applied by the relay to incoming events."""
    max_text_length:   int = 2000
    default_page_size: int = 50
    max_page_size:     int = 100

    @field_validator("max_text_length", "default_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _page_sizes_consistent(self) -> "ChatSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must not exceed max_page_size")
        return self


class StorageSettings(BaseModel):
    """DuckDB files. Use ``:memory:`` for throwaway databases."""
    messages_db:    str = "chat_messages.duckdb"
    directory_db:   str = "businesses.duckdb"
    credentials_db: str = "credentials.duckdb"


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML into an *AppSettings* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_data = _load_yaml(Path(settings_path))

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, messages_db=%s, log_level=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.messages_db,
        app_settings.logging.level,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace (or clear, with ``None``) the process-wide settings."""
    global _config
    _config = config
