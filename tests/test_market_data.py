import asyncio
import time

import httpx
import pytest

from paperpilot.config.settings import MarketDataConfig
from paperpilot.connectors.market_data import CoinGeckoClient
from paperpilot.errors import CircuitOpenError
from paperpilot.risk.circuit_breaker import CircuitBreaker


MARKETS = [
    {
        "id": "bitcoin",
        "symbol": "btc",
        "name": "Bitcoin",
        "market_cap_rank": 1,
        "current_price": 60000.0,
        "market_cap": 1.2e12,
        "total_volume": 3.0e10,
        "price_change_percentage_24h_in_currency": 2.5,
        "price_change_percentage_7d_in_currency": -1.0,
    },
    {
        "id": "broken-coin",
        "symbol": "brk",
        "name": "Broken",
        "market_cap_rank": 2,
        "current_price": None,
        "market_cap": 1e9,
    },
    {
        "id": "solana",
        "symbol": "sol",
        "name": "Solana",
        "market_cap_rank": 5,
        "current_price": 150.0,
        "market_cap": 7e10,
        "total_volume": 2.4e9,
        "price_change_percentage_24h": 4.0,
    },
    {
        "id": "sol-wormhole",
        "symbol": "sol",
        "name": "Wrapped SOL",
        "market_cap_rank": 400,
        "current_price": 149.0,
        "market_cap": 1e7,
    },
]


def _client(handler, breaker=None):
    config = MarketDataConfig(base_url="https://api.test/v3", retry_attempts=0)
    return CoinGeckoClient(config, breaker=breaker, transport=httpx.MockTransport(handler))


def _routes(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/coins/markets"):
        return httpx.Response(200, json=MARKETS)
    if path.endswith("/simple/price"):
        ids = request.url.params["ids"].split(",")
        prices = {"bitcoin": {"usd": 61000.0}, "solana": {"usd": 155.5}}
        return httpx.Response(200, json={i: prices[i] for i in ids if i in prices})
    if path.endswith("/coins/solana/market_chart"):
        now_ms = time.time() * 1000
        points = [[now_ms - 100 * 3600 * 1000, 100.0], [now_ms - 3600 * 1000, 150.0], [now_ms, 152.0]]
        return httpx.Response(200, json={"prices": points})
    if path.endswith("/coins/solana"):
        return httpx.Response(200, json={"sentiment_votes_up_percentage": 75.0})
    return httpx.Response(404)


def test_snapshots_skip_malformed_rows_and_duplicate_tickers() -> None:
    async def scenario():
        client = _client(_routes)
        try:
            return await client.get_snapshots(50)
        finally:
            await client.close()

    snapshots = asyncio.run(scenario())
    assert [s.symbol for s in snapshots] == ["BTC", "SOL"]
    sol = snapshots[1]
    assert sol.name == "Solana"
    assert sol.change_24h == 4.0
    assert sol.change_7d == 0.0


def test_prices_history_and_sentiment() -> None:
    async def scenario():
        client = _client(_routes)
        try:
            prices = await client.get_prices(["BTC", "SOL", "DOGE"])
            history = await client.get_price_history("SOL", hours=72)
            sentiment = await client.get_sentiment("SOL")
            unknown = await client.get_sentiment("DOGE")
            return prices, history, sentiment, unknown
        finally:
            await client.close()

    prices, history, sentiment, unknown = asyncio.run(scenario())
    assert prices == {"BTC": 61000.0, "SOL": 155.5}
    assert history == [150.0, 152.0]
    assert sentiment == pytest.approx(0.5)
    assert unknown is None


def test_breaker_opens_on_upstream_errors() -> None:
    calls = []

    def failing(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(503)

    breaker = CircuitBreaker("market-data", threshold=1, clock=lambda: 0.0)

    async def scenario():
        client = _client(failing, breaker=breaker)
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await client.get_snapshots(10)
            with pytest.raises(CircuitOpenError):
                await client.get_snapshots(10)
        finally:
            await client.close()

    asyncio.run(scenario())
    assert len(calls) == 1
    assert breaker.state == "OPEN"
