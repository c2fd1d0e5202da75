"""
config/settings.py — Central configuration via env vars + YAML override.

Priority: ENV > config.yaml > defaults
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    host: str = Field("0.0.0.0", description="API server bind host")
    port: int = Field(3000, description="API server port")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")
    static_dir: Optional[Path] = Field(None, description="Dashboard directory served at / (optional)")

    model_config = SettingsConfigDict(env_prefix="API_")


class StoreSettings(BaseSettings):
    backend: Literal["sql", "memory"] = Field("sql", description="Schedule store backend")
    url: str = Field("sqlite:///timp_relay.db", description="SQLAlchemy database URL")
    max_extractions: int = Field(100, description="Retention cap for the memory backend")
    echo: bool = Field(False, description="Log every SQL statement")

    model_config = SettingsConfigDict(env_prefix="STORE_")


def _without_env(model: type[BaseSettings], section: dict) -> dict:
    prefix = model.model_config.get("env_prefix", "")
    env = {key.upper() for key in os.environ}
    return {key: value for key, value in section.items() if f"{prefix}{key}".upper() not in env}


class Settings(BaseSettings):
    api: APISettings = Field(default_factory=APISettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="RELAY_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging YAML file if present."""
        path = config_path or Path(os.environ.get("RELAY_CONFIG_FILE", "config.yaml"))
        yaml_data: dict = {}

        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

        # Init kwargs outrank the environment in pydantic-settings, so YAML keys
        # that also have an env var set are left out
        api = APISettings(**_without_env(APISettings, yaml_data.get("api") or {}))
        store = StoreSettings(**_without_env(StoreSettings, yaml_data.get("store") or {}))

        return cls(api=api, store=store, config_file=path)

    def to_yaml(self, path: Path) -> None:
        """Save current settings to YAML."""
        data = {
            "api": {
                **self.api.model_dump(),
                "static_dir": str(self.api.static_dir) if self.api.static_dir else None,
            },
            "store": self.store.model_dump(),
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Singleton accessor — call get_settings() anywhere in the app
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
