"""Configuration management module."""

from paperpilot.config.settings import Settings, TradingConfig, load_settings
from paperpilot.config.store import SettingsStore, TradingSettings

__all__ = ["Settings", "TradingConfig", "load_settings", "SettingsStore", "TradingSettings"]
