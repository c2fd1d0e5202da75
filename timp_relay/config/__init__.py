"""config — Settings, env loading, YAML config."""
from .settings import APISettings, Settings, StoreSettings, get_settings, reload_settings

__all__ = ["APISettings", "Settings", "StoreSettings", "get_settings", "reload_settings"]
