"""CoinGecko market data and community sentiment over httpx."""

from __future__ import annotations

import math
import time
from typing import Any

import httpx
import structlog

from paperpilot.config.settings import MarketDataConfig
from paperpilot.models import MarketSnapshot
from paperpilot.risk.circuit_breaker import CircuitBreaker
from paperpilot.utils.retry import RetryPolicy, retry_async


class CoinGeckoClient:
    """Market snapshot, price and sentiment provider backed by the CoinGecko REST API."""

    def __init__(
        self,
        config: MarketDataConfig,
        api_key: str = "",
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        headers = {"accept": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self.http = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_sec,
            headers=headers,
            transport=transport,
        )
        self.breaker = breaker
        self.policy = RetryPolicy(
            max_retries=config.retry_attempts,
            initial_delay_ms=500,
            max_delay_ms=8000,
        )
        self._ids: dict[str, str] = {}
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    async def get_snapshots(self, limit: int) -> list[MarketSnapshot]:
        rows = await self._get(
            "/coins/markets",
            {
                "vs_currency": self.config.vs_currency,
                "order": "market_cap_desc",
                "per_page": min(max(limit, 1), 250),
                "page": 1,
                "price_change_percentage": "24h,7d",
            },
        )
        snapshots: list[MarketSnapshot] = []
        seen: set[str] = set()
        for row in rows or []:
            try:
                snapshot = self._parse_market_row(row)
            except (KeyError, TypeError, ValueError) as exc:
                self.log.warning("market_row_skipped", coin=row.get("id"), error=str(exc))
                continue
            # Tickers are not unique; the larger cap wins.
            if snapshot.symbol in seen:
                continue
            seen.add(snapshot.symbol)
            self._ids[snapshot.symbol] = row["id"]
            snapshots.append(snapshot)
        return snapshots

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        missing = [s for s in symbols if s not in self._ids]
        if missing:
            await self.get_snapshots(250)
        ids = {self._ids[s]: s for s in symbols if s in self._ids}
        for symbol in symbols:
            if symbol not in self._ids:
                self.log.warning("price_symbol_unknown", symbol=symbol)
        if not ids:
            return {}
        data = await self._get(
            "/simple/price",
            {"ids": ",".join(sorted(ids)), "vs_currencies": self.config.vs_currency},
        )
        prices: dict[str, float] = {}
        for coin_id, symbol in ids.items():
            value = (data.get(coin_id) or {}).get(self.config.vs_currency)
            if value is None:
                self.log.warning("price_missing", symbol=symbol)
                continue
            prices[symbol] = float(value)
        return prices

    async def get_price_history(self, symbol: str, hours: int) -> list[float]:
        coin_id = self._ids.get(symbol)
        if coin_id is None:
            return []
        days = max(1, math.ceil(hours / 24))
        data = await self._get(
            f"/coins/{coin_id}/market_chart",
            {"vs_currency": self.config.vs_currency, "days": days},
        )
        cutoff_ms = (time.time() - hours * 3600) * 1000
        return [float(price) for ts, price in data.get("prices", []) if ts >= cutoff_ms]

    async def get_sentiment(self, symbol: str) -> float | None:
        """Community up-vote share mapped onto [-1, 1]."""
        coin_id = self._ids.get(symbol)
        if coin_id is None:
            return None
        data = await self._get(
            f"/coins/{coin_id}",
            {
                "localization": "false",
                "tickers": "false",
                "market_data": "false",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        up_pct = data.get("sentiment_votes_up_percentage")
        if up_pct is None:
            return None
        return max(-1.0, min(1.0, float(up_pct) / 50 - 1))

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        async def _request() -> Any:
            start = time.perf_counter()
            response = await self.http.get(path, params=params)
            response.raise_for_status()
            self.log.debug(
                "market_data_response",
                path=path,
                status_code=response.status_code,
                latency_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return response.json()

        async def _with_retries() -> Any:
            return await retry_async(_request, self.policy, operation=f"GET {path}")

        if self.breaker is None:
            return await _with_retries()
        return await self.breaker.call(_with_retries)

    @staticmethod
    def _parse_market_row(row: dict[str, Any]) -> MarketSnapshot:
        price = row["current_price"]
        market_cap = row["market_cap"]
        if price is None or market_cap is None:
            raise ValueError("price or market cap missing")
        return MarketSnapshot(
            symbol=str(row["symbol"]).upper(),
            name=str(row.get("name") or row["symbol"]),
            market_cap_rank=int(row.get("market_cap_rank") or 10_000),
            price=float(price),
            market_cap=float(market_cap),
            volume_24h=float(row.get("total_volume") or 0.0),
            change_24h=float(
                row.get("price_change_percentage_24h_in_currency")
                or row.get("price_change_percentage_24h")
                or 0.0
            ),
            change_7d=float(row.get("price_change_percentage_7d_in_currency") or 0.0),
        )
