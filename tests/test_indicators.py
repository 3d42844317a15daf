import pandas as pd
import pytest

from paperpilot.features.indicators import calculate_ema, calculate_rsi, technical_snapshot


def test_rsi_extremes_and_flat_series() -> None:
    rising = pd.Series([float(i) for i in range(1, 31)])
    flat = pd.Series([10.0] * 30)
    falling = pd.Series([float(i) for i in range(30, 0, -1)])

    assert calculate_rsi(rising, 14).iloc[-1] == 100.0
    assert calculate_rsi(flat, 14).iloc[-1] == 50.0
    assert calculate_rsi(falling, 14).iloc[-1] == pytest.approx(0.0)


def test_ema_tracks_constant_series() -> None:
    series = pd.Series([5.0] * 20)
    assert calculate_ema(series, 12).iloc[-1] == pytest.approx(5.0)


def test_snapshot_of_uptrend() -> None:
    snapshot = technical_snapshot([float(i) for i in range(1, 31)])
    assert snapshot.rsi == 100.0
    assert snapshot.trend == "up"
    assert snapshot.last_price == 30.0
    assert snapshot.change_pct == pytest.approx(2900.0)
    payload = snapshot.to_payload()
    assert payload["trend"] == "up"
    assert set(payload) == {"rsi", "ema_fast", "ema_slow", "last_price", "change_pct", "trend"}


def test_short_history_leaves_indicators_empty() -> None:
    snapshot = technical_snapshot([100.0, 101.0, 99.0])
    assert snapshot.rsi is None
    assert snapshot.ema_fast is None
    assert snapshot.trend == "unknown"
    assert snapshot.last_price == 99.0

    empty = technical_snapshot([])
    assert empty.last_price is None
    assert empty.change_pct is None
