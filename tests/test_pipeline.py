import asyncio
from datetime import timedelta

import httpx
import pytest

from paperpilot.errors import SettingsUnavailable
from paperpilot.models import MarketSnapshot, Position, Recommendation


def _stored_recommendation(pipeline, **overrides):
    params = {
        "symbol": "SOL",
        "action": "BUY",
        "confidence": 85.0,
        "entry_price": 150.0,
        "stop_loss": 142.5,
        "take_profits": (165.0,),
        "now": pipeline.clock(),
    }
    params.update(overrides)
    rec = Recommendation.create(**params)
    pipeline.store.save_recommendation(rec)
    return rec


def test_discovery_scores_filters_and_caches(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline()

    scan = asyncio.run(pipeline.find_opportunities(force_refresh=True))
    cached = asyncio.run(pipeline.find_opportunities())

    assert [c.symbol for c in scan.candidates] == ["SOL"]
    assert scan.candidates[0].composite_score == pytest.approx(78.25)
    assert scan.summary.rejected == 1
    assert cached.cached is True
    assert [c.symbol for c in cached.candidates] == ["SOL"]
    assert fake_market.snapshot_calls == 1


def test_discovery_degrades_to_cache_when_market_data_fails(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline()
    fake_market.fail_snapshots = True
    with pytest.raises(httpx.ConnectError):
        asyncio.run(pipeline.find_opportunities(force_refresh=True))

    fake_market.fail_snapshots = False
    asyncio.run(pipeline.find_opportunities(force_refresh=True))
    fake_market.fail_snapshots = True
    scan = asyncio.run(pipeline.find_opportunities(force_refresh=True))
    assert scan.cached is True
    assert [c.symbol for c in scan.candidates] == ["SOL"]


def test_generate_recommendations_with_local_advisor(make_pipeline) -> None:
    pipeline = make_pipeline()

    batch = asyncio.run(pipeline.generate_recommendations(max_buy=3, max_sell=3))

    assert [r.symbol for r in batch.buy_recommendations] == ["SOL"]
    rec = batch.buy_recommendations[0]
    assert rec.source == "local"
    assert rec.confidence == 30.0
    assert rec.stop_loss == pytest.approx(142.5)
    assert pipeline.store.get_recommendation(rec.id) == rec
    data = batch.to_dict()
    assert data["skipped"] == {"buy": 0, "sell": 0}
    assert data["metadata"]["ai_model"] == "local"

    results = asyncio.run(pipeline.run_execution_cycle())
    assert [r.status for r in results] == ["discarded"]


def test_sell_side_recommendation_for_losing_position(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline()
    asyncio.run(pipeline.find_opportunities(force_refresh=True))
    pipeline.store.save_recommendation(
        Recommendation.create(
            symbol="SOL",
            action="BUY",
            confidence=90.0,
            entry_price=150.0,
            stop_loss=142.5,
            now=pipeline.clock(),
        )
    )
    pipeline.settings_store.update({"auto_execute": True, "human_approval": False})
    results = asyncio.run(pipeline.run_execution_cycle())
    assert [r.status for r in results] == ["executed"]

    fake_market.prices["SOL"] = 120.0
    fake_market.history["SOL"] = [float(p) for p in range(100, 150, 2)]
    fake_market.sentiment["SOL"] = -0.8
    batch = asyncio.run(pipeline.generate_recommendations(max_buy=0, max_sell=3))

    assert [r.action for r in batch.sell_recommendations] == ["SELL"]
    assert batch.sell_recommendations[0].entry_price == 120.0


def test_approval_flow_end_to_end(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline(auto_execute=True, human_approval=True)
    rec = _stored_recommendation(pipeline)

    results = asyncio.run(pipeline.run_execution_cycle())
    assert [r.status for r in results] == ["queued"]
    pending = pipeline.list_pending_approvals()
    assert [a.recommendation_id for a in pending] == [rec.id]

    result = asyncio.run(pipeline.approve(pending[0].id))
    assert result.status == "executed"
    assert pipeline.store.portfolio.positions["SOL"].take_profit == 165.0
    assert pipeline.list_pending_approvals() == []

    again = asyncio.run(pipeline.approve(pending[0].id))
    assert again.status == "invalid_state"

    fake_market.prices["SOL"] = 170.0
    report = asyncio.run(pipeline.run_monitor_cycle())
    assert [e.trigger for e in report.exits] == ["partial_take_profit"]
    assert pipeline.store.portfolio.positions["SOL"].stop_loss == pytest.approx(150.0)
    assert pipeline.get_monitoring_stats()["take_profits_triggered_24h"] == 1


def test_unreadable_settings_abort_the_cycle(make_pipeline) -> None:
    pipeline = make_pipeline()
    _stored_recommendation(pipeline)
    pipeline.settings_store.path.parent.mkdir(parents=True, exist_ok=True)
    pipeline.settings_store.path.write_text("confidence_threshold: [not, a, number]\n")

    with pytest.raises(SettingsUnavailable):
        asyncio.run(pipeline.run_execution_cycle())
    assert pipeline.get_execution_stats()["pending_recommendations"] == 1


def test_find_opportunities_returns_gated_buy_and_sell_lists(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline()
    pipeline.store.portfolio.positions["ETH"] = Position(
        symbol="ETH",
        quantity=1.0,
        avg_entry_price=2_000.0,
        stop_loss=1_500.0,
        take_profit=None,
        opened_at=pipeline.clock() - timedelta(days=3),
    )
    fake_market.prices["ETH"] = 1_600.0

    scan = asyncio.run(pipeline.find_opportunities(force_refresh=True))

    assert [(o.symbol, o.reason, o.urgency) for o in scan.buy_opportunities] == [("SOL", "breakout", "high")]
    assert [(o.symbol, o.reason, o.urgency) for o in scan.sell_opportunities] == [
        ("ETH", "risk_management", "high")
    ]
    assert scan.sell_opportunities[0].percent_gain == pytest.approx(-20.0)


def test_discovery_cycle_reads_settings_once(make_pipeline) -> None:
    pipeline = make_pipeline()
    original = pipeline.settings_store.load
    calls = []

    def counting_load():
        calls.append(1)
        return original()

    pipeline.settings_store.load = counting_load
    batch = asyncio.run(pipeline.run_discovery_cycle())

    assert [r.symbol for r in batch.buy_recommendations] == ["SOL"]
    assert len(calls) == 1


def test_expired_recommendation_is_kept_but_never_executed(make_pipeline) -> None:
    pipeline = make_pipeline(auto_execute=True, human_approval=False)
    stale = _stored_recommendation(pipeline, now=pipeline.clock() - timedelta(hours=25))

    results = asyncio.run(pipeline.run_execution_cycle())

    assert results == []
    assert pipeline.store.get_recommendation(stale.id) == stale
    assert pipeline.store.portfolio.positions == {}


def test_buy_with_unknown_volume_is_denied(make_pipeline) -> None:
    pipeline = make_pipeline(auto_execute=True, human_approval=False)
    _stored_recommendation(pipeline, symbol="ADA", entry_price=1.0, stop_loss=0.95, take_profits=(1.1,))

    results = asyncio.run(pipeline.run_execution_cycle())

    assert [r.status for r in results] == ["risk_denied"]
    assert "volume" in results[0].reason
    assert "ADA" not in pipeline.store.portfolio.positions


def test_sentiment_requests_are_bounded(make_pipeline, fake_market) -> None:
    pipeline = make_pipeline()
    pipeline.settings.discovery.sentiment_concurrency = 2
    fake_market.snapshots = [
        MarketSnapshot(f"C{i}", f"Coin {i}", i + 1, 1.0, 50_000_000.0, 10_000_000.0, 0.0, 0.0) for i in range(8)
    ]
    in_flight = {"now": 0, "peak": 0}

    async def slow_sentiment(symbol):
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0.01)
        in_flight["now"] -= 1
        return 0.0

    fake_market.get_sentiment = slow_sentiment
    asyncio.run(pipeline.find_opportunities(force_refresh=True))

    assert in_flight["peak"] == 2
