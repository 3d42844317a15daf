"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


DiscoveryProfile = Literal["conservative", "moderate", "aggressive", "debug"]
StrategyProfile = Literal["conservative", "moderate", "aggressive", "debug"]
AdvisorMode = Literal["local", "openai", "anthropic", "consensus"]
CoinUniverse = Literal["top10", "top25", "top50", "top100"]
SizingStrategy = Literal["equal", "confidence"]
TakeProfitStrategy = Literal["full", "partial", "trailing"]


class TradingConfig(BaseModel):
    """Operator-controlled trading switches.

    Read once per cycle into an immutable ``TradingSettings`` snapshot.
    """

    auto_execute: bool = False
    confidence_threshold: float = Field(default=75.0, ge=0.0, le=100.0)
    human_approval: bool = True
    position_sizing_strategy: SizingStrategy = "equal"
    max_position_size: float = Field(default=5.0, gt=0.0, le=5.0)
    take_profit_strategy: TakeProfitStrategy = "partial"
    auto_stop_loss: bool = True
    coin_universe: CoinUniverse = "top50"
    discovery_strategy: DiscoveryProfile = "moderate"
    ai_model: AdvisorMode = "local"
    strategy_profile: StrategyProfile = "moderate"

    @field_validator("strategy_profile")
    @classmethod
    def validate_strategy_profile(cls, v: str) -> str:
        if v == "debug" and os.environ.get("PAPERPILOT_ALLOW_DEBUG_PROFILE") != "1":
            raise ValueError("debug strategy profile requires PAPERPILOT_ALLOW_DEBUG_PROFILE=1")
        return v


class DiscoveryConfig(BaseModel):
    """Discovery cycle configuration."""

    interval_hours: int = Field(default=4, ge=1, le=48)
    cache_minutes: int = Field(default=30, ge=0, le=720)
    candidate_limit: int = Field(default=20, ge=1, le=100)
    sentiment_enabled: bool = True
    sentiment_concurrency: int = Field(default=5, ge=1, le=50)


class OpportunityConfig(BaseModel):
    """Limits on how many opportunities reach the advisory call."""

    max_buy: int = Field(default=3, ge=0, le=10)
    max_sell: int = Field(default=3, ge=0, le=10)
    price_history_hours: int = Field(default=72, ge=24, le=720)
    rsi_period: int = Field(default=14, ge=5, le=50)


class RiskConfig(BaseModel):
    """Risk management configuration - contains hard limits."""

    max_position_pct: float = Field(default=5.0, ge=0.5, le=5.0)
    max_portfolio_risk_pct: float = Field(default=15.0, ge=1.0, le=15.0)
    max_daily_loss_pct: float = Field(default=3.0, ge=0.5, le=3.0)
    max_open_positions: int = Field(default=5, ge=1, le=5)
    min_volume_usd: float = Field(default=1_000_000, ge=0)
    max_correlation: float = Field(default=0.7, ge=0.0, le=1.0)
    min_trade_interval_minutes: int = Field(default=60, ge=0, le=1440)
    max_stop_distance_pct: float = Field(default=10.0, ge=1.0, le=50.0)


class ExecutionConfig(BaseModel):
    """Trade execution configuration."""

    retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_initial_delay_ms: int = Field(default=1000, ge=10, le=5000)
    retry_max_delay_ms: int = Field(default=10000, ge=100, le=60000)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    trade_timeout_sec: int = Field(default=30, ge=1, le=300)
    approval_ttl_minutes: int = Field(default=60, ge=1, le=1440)
    recommendation_ttl_hours: int = Field(default=24, ge=1, le=168)


class MonitorConfig(BaseModel):
    """Position monitor configuration."""

    interval_minutes: int = Field(default=5, ge=1, le=60)
    trailing_stop_pct: float = Field(default=5.0, ge=0.5, le=50.0)
    default_stop_loss_pct: float = Field(default=5.0, ge=0.5, le=50.0)
    partial_exit_fraction: float = Field(default=0.5, gt=0.0, lt=1.0)
    min_remaining_notional: float = Field(default=1.0, ge=0.0)


class BreakerConfig(BaseModel):
    """Per action class circuit breaker thresholds."""

    threshold: int = Field(default=5, ge=1, le=100)
    cooldown_sec: float = Field(default=60.0, ge=1.0, le=86400.0)
    reset_count: int = Field(default=2, ge=1, le=20)


class BreakersConfig(BaseModel):
    """Circuit breakers, one per protected action class."""

    execution: BreakerConfig = Field(
        default_factory=lambda: BreakerConfig(threshold=5, cooldown_sec=900.0, reset_count=2)
    )
    market_data: BreakerConfig = Field(default_factory=BreakerConfig)
    advisory: BreakerConfig = Field(
        default_factory=lambda: BreakerConfig(threshold=5, cooldown_sec=120.0, reset_count=2)
    )


class LLMConfig(BaseModel):
    """Advisory provider configuration."""

    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3-5-haiku-latest"
    max_tokens: int = Field(default=800, ge=100, le=4000)
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    request_timeout_sec: int = Field(default=30, ge=5, le=120)
    retry_attempts: int = Field(default=2, ge=0, le=5)


class MarketDataConfig(BaseModel):
    """Market data provider configuration."""

    base_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "usd"
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)
    retry_attempts: int = Field(default=3, ge=0, le=10)


class SchedulerConfig(BaseModel):
    """Cycle deadlines for periodic jobs."""

    discovery_deadline_sec: int = Field(default=600, ge=10, le=7200)
    execution_interval_minutes: int = Field(default=5, ge=1, le=60)
    execution_deadline_sec: int = Field(default=120, ge=10, le=3600)
    monitor_deadline_sec: int = Field(default=120, ge=10, le=3600)


class PaperConfig(BaseModel):
    """Paper account simulation."""

    initial_cash: float = Field(default=10_000.0, gt=0)
    slippage_bps: float = Field(default=10.0, ge=0.0, le=200.0)
    fee_pct: float = Field(default=0.1, ge=0.0, le=1.0)


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    ledger_path: str = "./data/ledger"
    state_path: str = "./data/state"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_port: int = Field(default=8000, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    coingecko_api_key: str = Field(default="", alias="COINGECKO_API_KEY")

    trading: TradingConfig = Field(default_factory=TradingConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    opportunities: OpportunityConfig = Field(default_factory=OpportunityConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    breakers: BreakersConfig = Field(default_factory=BreakersConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    def validate_for_runtime(self) -> list[str]:
        """Return configuration problems that prevent the runtime from starting."""
        errors = []
        mode = self.trading.ai_model
        if mode in ("openai", "consensus") and not self.openai_api_key:
            errors.append("OPENAI_API_KEY not set")
        if mode in ("anthropic", "consensus") and not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY not set")
        if self.execution.retry_initial_delay_ms > self.execution.retry_max_delay_ms:
            errors.append("retry_initial_delay_ms exceeds retry_max_delay_ms")
        return errors


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    env_path = config_file.parent / ".env"
    return Settings(**config_data, _env_file=env_path)


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "trading": {
            "auto_execute": False,
            "confidence_threshold": 75,
            "human_approval": True,
            "position_sizing_strategy": "equal",
            "max_position_size": 5.0,
            "take_profit_strategy": "partial",
            "auto_stop_loss": True,
            "coin_universe": "top50",
            "discovery_strategy": "moderate",
            "ai_model": "local",
            "strategy_profile": "moderate",
        },
        "discovery": {
            "interval_hours": 4,
            "cache_minutes": 30,
            "candidate_limit": 20,
            "sentiment_concurrency": 5,
        },
        "opportunities": {
            "max_buy": 3,
            "max_sell": 3,
        },
        "risk": {
            "max_position_pct": 5.0,
            "max_portfolio_risk_pct": 15.0,
            "max_daily_loss_pct": 3.0,
            "max_open_positions": 5,
            "min_volume_usd": 1000000,
            "max_correlation": 0.7,
            "min_trade_interval_minutes": 60,
        },
        "monitor": {
            "interval_minutes": 5,
            "trailing_stop_pct": 5.0,
            "default_stop_loss_pct": 5.0,
        },
        "paper": {
            "initial_cash": 10000.0,
            "slippage_bps": 10.0,
            "fee_pct": 0.1,
        },
        "storage": {
            "ledger_path": "./data/ledger",
            "state_path": "./data/state",
            "logs_path": "./logs",
        },
        "monitoring": {
            "metrics_port": 9090,
            "api_port": 8000,
            "log_level": "INFO",
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
