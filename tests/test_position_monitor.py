import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from paperpilot.config.settings import MonitorConfig, PaperConfig
from paperpilot.config.store import TradingSettings
from paperpilot.errors import ExecutionError, StopLossRatchetError
from paperpilot.execution.monitor import (
    ExitAction,
    PositionMonitor,
    StopAction,
    plan_actions,
    plan_position,
    ratchet_stop,
)
from paperpilot.execution.paper_broker import PaperBroker
from paperpilot.ledger.execution_log import ExecutionLedger
from paperpilot.ledger.locks import KeyedLocks
from paperpilot.ledger.store import StateStore
from paperpilot.models import Position
from paperpilot.risk.circuit_breaker import CircuitBreaker
from paperpilot.utils.scheduler import CycleDeadline


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
PARTIAL = TradingSettings(take_profit_strategy="partial")
TRAILING = TradingSettings(take_profit_strategy="trailing")
FULL = TradingSettings(take_profit_strategy="full")


class _SelectiveBroker(PaperBroker):
    def apply(self, portfolio, side, symbol, quantity, price, now, stop_loss=None, take_profit=None):
        if symbol == "BAD":
            raise ExecutionError("simulated fill failure")
        return super().apply(portfolio, side, symbol, quantity, price, now, stop_loss, take_profit)


def _position(symbol="ETH", qty=1.0, entry=100.0, stop=95.0, take_profit=120.0, **extra):
    return Position(
        symbol=symbol,
        quantity=qty,
        avg_entry_price=entry,
        stop_loss=stop,
        take_profit=take_profit,
        opened_at=NOW - timedelta(hours=6),
        **extra,
    )


def _monitor(*positions, breaker=None, broker=None):
    store = StateStore(None, initial_cash=1_000.0)
    for position in positions:
        store.portfolio.positions[position.symbol] = position
    ledger = ExecutionLedger()
    monitor = PositionMonitor(
        store=store,
        ledger=ledger,
        broker=broker or PaperBroker(PaperConfig(slippage_bps=0.0, fee_pct=0.0)),
        breaker=breaker or CircuitBreaker("execution", clock=lambda: 0.0),
        locks=KeyedLocks(),
        config=MonitorConfig(),
    )
    return monitor, store, ledger


def test_partial_take_profit_ladder_moves_stop_to_breakeven() -> None:
    monitor, store, ledger = _monitor(_position())

    for hit in range(3):
        report = asyncio.run(monitor.run_cycle(PARTIAL, {"ETH": 120.0}, NOW + timedelta(minutes=hit)))
        assert [e.trigger for e in report.exits] == ["partial_take_profit"]

    position = store.portfolio.positions["ETH"]
    assert position.quantity == pytest.approx(0.125)
    assert position.stop_loss == 100.0
    assert position.partial_exits == 3
    exits = [e for e in ledger.entries() if e.action == "exit"]
    assert [e.quantity for e in exits] == pytest.approx([0.5, 0.25, 0.125])
    assert all(e.outcome == "executed" for e in exits)


def test_stop_loss_takes_priority_and_exits_everything() -> None:
    position = _position(stop=95.0)
    for settings in (PARTIAL, TRAILING, FULL):
        actions = plan_position(settings, position, 94.0, MonitorConfig())
        assert actions == [ExitAction("ETH", "stop_loss", 1.0, 94.0, full_exit=True)]

    monitor, store, _ = _monitor(_position())
    report = asyncio.run(monitor.run_cycle(PARTIAL, {"ETH": 90.0}, NOW))
    assert [e.trigger for e in report.exits] == ["stop_loss"]
    assert "ETH" not in store.portfolio.positions
    assert store.portfolio.realized_pnl_for(NOW) == pytest.approx(-10.0)


def test_trailing_stop_only_moves_up() -> None:
    monitor, store, _ = _monitor(_position(stop=95.0))
    stops = []
    for minute, price in enumerate([110.0, 105.0, 120.0, 118.0]):
        asyncio.run(monitor.run_cycle(TRAILING, {"ETH": price}, NOW + timedelta(minutes=minute)))
        stops.append(store.portfolio.positions["ETH"].stop_loss)

    assert stops == pytest.approx([104.5, 104.5, 114.0, 114.0])
    assert store.portfolio.positions["ETH"].highest_price == 120.0

    report = asyncio.run(monitor.run_cycle(TRAILING, {"ETH": 113.0}, NOW + timedelta(minutes=10)))
    assert [e.trigger for e in report.exits] == ["stop_loss"]
    assert "ETH" not in store.portfolio.positions


def test_trailing_mode_never_sells_at_take_profit() -> None:
    actions = plan_position(TRAILING, _position(take_profit=120.0), 130.0, MonitorConfig())
    assert all(isinstance(a, StopAction) for a in actions)
    assert actions[0].new_stop == pytest.approx(123.5)


def test_full_take_profit_sells_whole_position() -> None:
    actions = plan_position(FULL, _position(qty=2.0), 125.0, MonitorConfig())
    assert actions == [ExitAction("ETH", "take_profit", 2.0, 125.0, full_exit=True)]
    assert plan_position(FULL, _position(), 119.0, MonitorConfig()) == []
    assert plan_position(FULL, _position(take_profit=None), 500.0, MonitorConfig()) == []


def test_tiny_remainder_becomes_full_exit() -> None:
    actions = plan_position(PARTIAL, _position(qty=0.01), 120.0, MonitorConfig())
    assert actions == [ExitAction("ETH", "take_profit", 0.01, 120.0, full_exit=True)]


def test_missing_stop_gets_default_stop() -> None:
    position = _position(stop=None)
    actions = plan_position(PARTIAL, position, 100.0, MonitorConfig())
    assert [a.trigger for a in actions] == ["auto_stop_loss"]
    assert actions[0].new_stop == pytest.approx(95.0)

    below = plan_position(PARTIAL, position, 94.0, MonitorConfig())
    assert [type(a) for a in below] == [StopAction, ExitAction]
    assert below[1].trigger == "stop_loss"

    manual = TradingSettings(auto_stop_loss=False)
    assert plan_position(manual, position, 94.0, MonitorConfig()) == []


def test_ratchet_refuses_to_lower_stop() -> None:
    position = _position(stop=100.0)
    with pytest.raises(StopLossRatchetError):
        ratchet_stop(position, 99.0, NOW)
    assert ratchet_stop(position, 100.0, NOW) is False
    assert ratchet_stop(position, 101.0, NOW) is True
    assert position.stop_loss == 101.0
    assert position.protection_updated_at == NOW


def test_plan_actions_skips_positions_without_price() -> None:
    positions = [_position("ETH"), _position("SOL")]
    actions = plan_actions(PARTIAL, positions, {"ETH": 90.0}, MonitorConfig())
    assert [a.symbol for a in actions] == ["ETH"]


def test_open_breaker_blocks_exit() -> None:
    breaker = CircuitBreaker("execution", threshold=1, clock=lambda: 0.0)
    breaker.record_failure()
    monitor, store, ledger = _monitor(_position(), breaker=breaker)

    report = asyncio.run(monitor.run_cycle(PARTIAL, {"ETH": 90.0}, NOW))

    assert report.blocked == ["ETH"]
    assert store.portfolio.positions["ETH"].quantity == 1.0
    assert ledger.entries()[-1].outcome == "blocked"


def test_failing_symbol_does_not_stop_the_cycle() -> None:
    broker = _SelectiveBroker(PaperConfig(slippage_bps=0.0, fee_pct=0.0))
    monitor, store, ledger = _monitor(_position("BAD"), _position("ETH"), broker=broker)

    report = asyncio.run(monitor.run_cycle(PARTIAL, {"BAD": 90.0, "ETH": 90.0}, NOW))

    assert report.failed == ["BAD"]
    assert [e.symbol for e in report.exits] == ["ETH"]
    assert "BAD" in store.portfolio.positions
    assert [(e.symbol, e.outcome) for e in ledger.entries()] == [("BAD", "failed"), ("ETH", "executed")]


def test_expired_deadline_defers_remaining_symbols() -> None:
    monitor, _, _ = _monitor(_position("ETH"), _position("SOL"))
    report = asyncio.run(
        monitor.run_cycle(PARTIAL, {"ETH": 90.0, "SOL": 90.0}, NOW, deadline=CycleDeadline(0.0))
    )
    assert report.deferred == ["ETH", "SOL"]
    assert report.exits == []


def test_monitoring_stats() -> None:
    monitor, _, _ = _monitor(_position("ETH"), _position("SOL"), _position("ADA"))
    asyncio.run(monitor.run_cycle(PARTIAL, {"ETH": 90.0, "SOL": 125.0, "ADA": 101.0}, NOW))

    stats = monitor.get_monitoring_stats(NOW)
    assert stats == {
        "open_positions": 2,
        "stop_losses_triggered_24h": 1,
        "take_profits_triggered_24h": 1,
        "avg_holding_hours": 6.0,
    }
