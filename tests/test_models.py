from datetime import datetime, timedelta, timezone

import pytest

from paperpilot.errors import InvariantViolation
from paperpilot.models import PortfolioState, Position, Recommendation, TradeApproval


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _recommendation(**overrides):
    params = {
        "symbol": "ETH",
        "action": "BUY",
        "confidence": 80.0,
        "entry_price": 100.0,
        "stop_loss": 95.0,
        "now": NOW,
    }
    params.update(overrides)
    return Recommendation.create(**params)


def test_buy_recommendation_requires_stop_below_entry() -> None:
    with pytest.raises(InvariantViolation):
        _recommendation(stop_loss=None)
    with pytest.raises(InvariantViolation):
        _recommendation(stop_loss=100.0)
    assert _recommendation(action="SELL", stop_loss=None).stop_loss is None


def test_recommendation_rejects_bad_values() -> None:
    with pytest.raises(InvariantViolation):
        _recommendation(confidence=101.0)
    with pytest.raises(InvariantViolation):
        _recommendation(entry_price=0.0)
    with pytest.raises(InvariantViolation):
        _recommendation(action="HOLD")


def test_recommendation_expires_after_a_day() -> None:
    rec = _recommendation(take_profits=(110.0, 120.0, 130.0))
    assert rec.take_profit_2 == 120.0
    assert not rec.is_expired(NOW + timedelta(hours=23, minutes=59))
    assert rec.is_expired(NOW + timedelta(hours=24))


def test_approval_effective_status_tracks_expiry() -> None:
    approval = TradeApproval(
        id="a1",
        recommendation_id="r1",
        symbol="ETH",
        action="BUY",
        quantity=1.0,
        entry_price=100.0,
        stop_loss=95.0,
        take_profit=None,
        confidence=80.0,
        status="pending",
        created_at=NOW,
        expires_at=NOW + timedelta(hours=1),
    )
    assert approval.effective_status(NOW) == "pending"
    assert approval.effective_status(NOW + timedelta(hours=1)) == "expired"
    assert TradeApproval.from_dict(approval.to_dict()) == approval


def test_position_rejects_negative_quantity_and_defaults_high_water_mark() -> None:
    with pytest.raises(InvariantViolation):
        Position("ETH", -1.0, 100.0, 95.0, None, NOW)
    position = Position("ETH", 2.0, 100.0, 95.0, None, NOW)
    assert position.highest_price == 100.0
    assert position.unrealized_pnl(110.0) == pytest.approx(20.0)
    assert position.percent_gain(90.0) == pytest.approx(-10.0)


def test_daily_realized_pnl_rolls_over_at_midnight_utc() -> None:
    portfolio = PortfolioState(cash=1_000.0)
    portfolio.book_realized_pnl(-20.0, NOW)
    portfolio.book_realized_pnl(5.0, NOW + timedelta(hours=1))
    assert portfolio.realized_pnl_for(NOW) == -15.0

    tomorrow = NOW + timedelta(days=1)
    assert portfolio.realized_pnl_for(tomorrow) == 0.0
    portfolio.book_realized_pnl(7.0, tomorrow)
    assert portfolio.realized_pnl_today == 7.0


def test_total_value_marks_holdings_to_price() -> None:
    portfolio = PortfolioState(
        cash=500.0,
        positions={"ETH": Position("ETH", 2.0, 100.0, 95.0, None, NOW)},
    )
    assert portfolio.total_value() == 700.0
    assert portfolio.total_value({"ETH": 150.0}) == 800.0
