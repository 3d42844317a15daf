from datetime import datetime, timezone

import pytest

from paperpilot.config.settings import PaperConfig
from paperpilot.errors import ExecutionError
from paperpilot.execution.paper_broker import PaperBroker
from paperpilot.models import PortfolioState


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _broker(**overrides):
    params = {"slippage_bps": 10.0, "fee_pct": 0.1}
    params.update(overrides)
    return PaperBroker(PaperConfig(**params))


def test_buy_applies_slippage_and_fee() -> None:
    portfolio = PortfolioState(cash=10_000.0)
    fill = _broker().apply(portfolio, "BUY", "ETH", 2.0, 100.0, NOW, stop_loss=95.0, take_profit=120.0)

    assert fill.fill_price == pytest.approx(100.1)
    assert fill.fee == pytest.approx(0.2002)
    assert portfolio.cash == pytest.approx(10_000.0 - 200.4002)
    position = portfolio.positions["ETH"]
    assert position.quantity == 2.0
    assert position.avg_entry_price == pytest.approx(100.1)
    assert position.stop_loss == 95.0
    assert position.protection_updated_at == NOW
    assert portfolio.last_trade_at["ETH"] == NOW


def test_sell_books_realized_pnl_and_keeps_remainder() -> None:
    portfolio = PortfolioState(cash=10_000.0)
    broker = _broker()
    broker.apply(portfolio, "BUY", "ETH", 2.0, 100.0, NOW, stop_loss=95.0)
    fill = broker.apply(portfolio, "SELL", "ETH", 1.0, 110.0, NOW)

    assert fill.fill_price == pytest.approx(109.89)
    assert fill.realized_pnl == pytest.approx(9.79 - 0.10989)
    assert fill.remaining_quantity == pytest.approx(1.0)
    assert portfolio.positions["ETH"].quantity == pytest.approx(1.0)
    assert portfolio.realized_pnl_for(NOW) == pytest.approx(fill.realized_pnl)


def test_full_sell_removes_position() -> None:
    portfolio = PortfolioState(cash=1_000.0)
    broker = _broker(slippage_bps=0.0, fee_pct=0.0)
    broker.apply(portfolio, "BUY", "SOL", 3.0, 100.0, NOW, stop_loss=90.0)
    fill = broker.apply(portfolio, "SELL", "SOL", 3.0, 80.0, NOW)

    assert "SOL" not in portfolio.positions
    assert fill.remaining_quantity == 0.0
    assert fill.realized_pnl == pytest.approx(-60.0)
    assert portfolio.cash == pytest.approx(940.0)


def test_adding_to_position_averages_entry() -> None:
    portfolio = PortfolioState(cash=1_000.0)
    broker = _broker(slippage_bps=0.0, fee_pct=0.0)
    broker.apply(portfolio, "BUY", "SOL", 1.0, 100.0, NOW, stop_loss=90.0)
    broker.apply(portfolio, "BUY", "SOL", 1.0, 120.0, NOW)
    position = portfolio.positions["SOL"]
    assert position.quantity == 2.0
    assert position.avg_entry_price == pytest.approx(110.0)
    assert position.stop_loss == 90.0
    assert position.highest_price == 120.0


def test_add_on_buy_never_lowers_stop() -> None:
    portfolio = PortfolioState(cash=1_000.0)
    broker = _broker(slippage_bps=0.0, fee_pct=0.0)
    broker.apply(portfolio, "BUY", "SOL", 1.0, 120.0, NOW, stop_loss=110.0)
    portfolio.positions["SOL"].stop_loss = 130.0

    broker.apply(portfolio, "BUY", "SOL", 0.1, 135.0, NOW, stop_loss=120.0)
    assert portfolio.positions["SOL"].stop_loss == 130.0

    broker.apply(portfolio, "BUY", "SOL", 0.1, 140.0, NOW, stop_loss=133.0)
    assert portfolio.positions["SOL"].stop_loss == 133.0


def test_insufficient_funds_leaves_portfolio_untouched() -> None:
    portfolio = PortfolioState(cash=100.0)
    with pytest.raises(ExecutionError, match="Insufficient funds"):
        _broker().apply(portfolio, "BUY", "ETH", 5.0, 100.0, NOW, stop_loss=95.0)
    assert portfolio.cash == 100.0
    assert portfolio.positions == {}
    assert portfolio.last_trade_at == {}


def test_overselling_and_invalid_orders_are_refused() -> None:
    portfolio = PortfolioState(cash=1_000.0)
    broker = _broker()
    with pytest.raises(ExecutionError, match="Insufficient quantity"):
        broker.apply(portfolio, "SELL", "ETH", 1.0, 100.0, NOW)
    with pytest.raises(ExecutionError):
        broker.apply(portfolio, "BUY", "ETH", 0.0, 100.0, NOW, stop_loss=95.0)
