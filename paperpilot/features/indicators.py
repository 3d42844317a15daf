"""Technical indicator calculations supplied to the advisory payload."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import pandas as pd


def calculate_ema(series: pd.Series, period: int) -> pd.Series:
    """Exponential moving average."""
    return series.ewm(span=period, adjust=False).mean()


def calculate_rsi(series: pd.Series, period: int) -> pd.Series:
    """Relative Strength Index."""
    delta = series.diff()
    gains = delta.where(delta > 0, 0.0)
    losses = -delta.where(delta < 0, 0.0)
    avg_gain = gains.rolling(window=period, min_periods=period).mean()
    avg_loss = losses.rolling(window=period, min_periods=period).mean()
    rs = avg_gain / avg_loss.replace(0, float("nan"))
    rsi = 100 - (100 / (1 + rs))
    # No losses in the window means maximal strength, not missing data.
    rsi = rsi.where(~((avg_loss == 0) & (avg_gain > 0)), 100.0)
    return rsi.fillna(50)


@dataclass(frozen=True)
class TechnicalSnapshot:
    rsi: float | None
    ema_fast: float | None
    ema_slow: float | None
    last_price: float | None
    change_pct: float | None

    @property
    def trend(self) -> str:
        if self.ema_fast is None or self.ema_slow is None:
            return "unknown"
        if self.ema_fast > self.ema_slow:
            return "up"
        if self.ema_fast < self.ema_slow:
            return "down"
        return "flat"

    def to_payload(self) -> dict[str, float | str | None]:
        return {
            "rsi": self.rsi,
            "ema_fast": self.ema_fast,
            "ema_slow": self.ema_slow,
            "last_price": self.last_price,
            "change_pct": self.change_pct,
            "trend": self.trend,
        }


def technical_snapshot(
    prices: Sequence[float],
    rsi_period: int = 14,
    ema_fast: int = 12,
    ema_slow: int = 26,
) -> TechnicalSnapshot:
    """Summarize a close-price history; short histories yield ``None`` fields."""
    if not prices:
        return TechnicalSnapshot(None, None, None, None, None)
    series = pd.Series(list(prices), dtype="float64")
    last = float(series.iloc[-1])
    first = float(series.iloc[0])
    change = (last - first) / first * 100 if first > 0 else None
    rsi = float(calculate_rsi(series, rsi_period).iloc[-1]) if len(series) > rsi_period else None
    fast = float(calculate_ema(series, ema_fast).iloc[-1]) if len(series) >= ema_fast else None
    slow = float(calculate_ema(series, ema_slow).iloc[-1]) if len(series) >= ema_slow else None
    return TechnicalSnapshot(rsi=rsi, ema_fast=fast, ema_slow=slow, last_price=last, change_pct=change)
