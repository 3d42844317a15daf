"""Operator-editable trading settings, read as one snapshot per cycle."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from paperpilot.config.settings import TradingConfig
from paperpilot.errors import SettingsUnavailable


UNIVERSE_SIZES = {"top10": 10, "top25": 25, "top50": 50, "top100": 100}


@dataclass(frozen=True)
class TradingSettings:
    auto_execute: bool = False
    confidence_threshold: float = 75.0
    human_approval: bool = True
    position_sizing_strategy: str = "equal"
    max_position_size: float = 5.0
    take_profit_strategy: str = "partial"
    auto_stop_loss: bool = True
    coin_universe: str = "top50"
    discovery_strategy: str = "moderate"
    ai_model: str = "local"
    strategy_profile: str = "moderate"

    @property
    def universe_size(self) -> int:
        return UNIVERSE_SIZES.get(self.coin_universe, 50)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_config(cls, config: TradingConfig) -> "TradingSettings":
        return cls(**config.model_dump())


class SettingsStore:
    """Layer a YAML override file on top of the configured trading defaults."""

    def __init__(self, defaults: TradingConfig, path: str | Path | None = None) -> None:
        self.defaults = defaults
        self.path = Path(path) if path else None
        self._log = structlog.get_logger(__name__)

    def load(self) -> TradingSettings:
        overrides = self._read_overrides()
        try:
            merged = TradingConfig(**(self.defaults.model_dump() | overrides))
        except ValidationError as exc:
            raise SettingsUnavailable(f"invalid trading settings: {exc}") from exc
        return TradingSettings.from_config(merged)

    def update(self, changes: dict[str, Any]) -> TradingSettings:
        """Validate and persist a partial update, returning the new snapshot."""
        if self.path is None:
            raise SettingsUnavailable("settings store has no backing file")
        overrides = self._read_overrides() | changes
        try:
            merged = TradingConfig(**(self.defaults.model_dump() | overrides))
        except ValidationError as exc:
            raise SettingsUnavailable(f"invalid trading settings: {exc}") from exc
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(overrides, f, default_flow_style=False, sort_keys=True)
        self._log.info("trading_settings_updated", changes=sorted(changes))
        return TradingSettings.from_config(merged)

    def _read_overrides(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise SettingsUnavailable(f"cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SettingsUnavailable(f"{self.path} must contain a mapping")
        return data
