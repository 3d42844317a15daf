"""Contracts for the external collaborators the decision loop consumes."""

from __future__ import annotations

from typing import Any, Protocol

from paperpilot.models import AdvisorVerdict, MarketSnapshot


class MarketDataProvider(Protocol):
    async def get_snapshots(self, limit: int) -> list[MarketSnapshot]:
        """Top ``limit`` coins by market cap; malformed rows are skipped."""
        ...

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        """Current prices; symbols that fail are absent from the result."""
        ...

    async def get_price_history(self, symbol: str, hours: int) -> list[float]:
        ...

    async def close(self) -> None:
        ...


class SentimentProvider(Protocol):
    async def get_sentiment(self, symbol: str) -> float | None:
        """Sentiment in [-1, 1], or ``None`` when unknown."""
        ...


class Advisor(Protocol):
    name: str

    async def recommend(self, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        ...
