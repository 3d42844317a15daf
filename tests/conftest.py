from __future__ import annotations

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import httpx
import pytest
from prometheus_client import CollectorRegistry

from paperpilot.config.settings import PaperConfig, Settings, StorageConfig, TradingConfig
from paperpilot.main import build_pipeline
from paperpilot.models import MarketSnapshot
from paperpilot.monitoring.metrics import Metrics


PIPELINE_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp).

    State and ledger files are written here; some environments deny access to
    dirs created under the system temp directory.
    """
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


class FakeMarket:
    """In-memory market data and sentiment provider."""

    def __init__(self) -> None:
        self.snapshots = [
            MarketSnapshot("SOL", "Solana", 5, 150.0, 1_000_000_000.0, 240_000_000.0, 5.0, 5.0),
            MarketSnapshot("DOGE", "Dogecoin", 9, 0.1, 2_000_000.0, 100_000.0, 0.0, 0.0),
        ]
        self.prices = {"SOL": 150.0, "DOGE": 0.1}
        self.history = {"SOL": [float(p) for p in range(200, 150, -2)]}
        self.sentiment = {"SOL": 0.6}
        self.fail_snapshots = False
        self.snapshot_calls = 0
        self.closed = False

    async def get_snapshots(self, limit: int) -> list[MarketSnapshot]:
        if self.fail_snapshots:
            raise httpx.ConnectError("market data unreachable")
        self.snapshot_calls += 1
        return self.snapshots[:limit]

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        return {s: self.prices[s] for s in symbols if s in self.prices}

    async def get_price_history(self, symbol: str, hours: int) -> list[float]:
        return list(self.history.get(symbol, []))

    async def get_sentiment(self, symbol: str) -> float | None:
        return self.sentiment.get(symbol)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture
def make_pipeline(workspace_tmp_path: Path, fake_market: FakeMarket):
    """Build the full pipeline over the fake market with a fixed clock."""

    def _make(**trading):
        settings = Settings(
            trading=TradingConfig(**trading),
            storage=StorageConfig(
                ledger_path=str(workspace_tmp_path / "ledger"),
                state_path=str(workspace_tmp_path / "state"),
                logs_path=str(workspace_tmp_path / "logs"),
            ),
            paper=PaperConfig(slippage_bps=0.0, fee_pct=0.0),
        )
        pipeline = build_pipeline(settings, metrics=Metrics(CollectorRegistry()), market=fake_market)
        pipeline.clock = lambda: PIPELINE_NOW
        return pipeline

    return _make
