"""Position sizing utilities."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Literal


SizingStrategy = Literal["equal", "confidence"]


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    notional: float
    fraction: float


def _round_step(value: float, step: float) -> float:
    if step <= 0:
        return value
    precision = abs(Decimal(str(step)).as_tuple().exponent)
    quant = Decimal(str(step))
    rounded = (Decimal(str(value)) / quant).to_integral_value(rounding=ROUND_DOWN) * quant
    return float(round(rounded, precision))


class PositionSizer:
    """Fraction-of-portfolio sizing, equal weight or scaled by confidence."""

    def __init__(self, hard_max_pct: float, quantity_step: float = 1e-8, min_notional: float = 1.0) -> None:
        self.hard_max_pct = hard_max_pct
        self.quantity_step = quantity_step
        self.min_notional = min_notional

    def fraction(self, strategy: SizingStrategy, max_position_pct: float, confidence: float) -> float:
        max_fraction = min(max_position_pct, self.hard_max_pct) / 100
        if strategy == "confidence":
            scaled = max_fraction * max(0.0, min(confidence, 100.0)) / 100
            return min(scaled, max_fraction)
        return max_fraction

    def calculate_size(
        self,
        portfolio_value: float,
        price: float,
        strategy: SizingStrategy,
        max_position_pct: float,
        confidence: float,
    ) -> PositionSize | None:
        if portfolio_value <= 0 or price <= 0:
            return None
        fraction = self.fraction(strategy, max_position_pct, confidence)
        notional = portfolio_value * fraction
        if notional < self.min_notional:
            return None
        quantity = _round_step(notional / price, self.quantity_step)
        if quantity <= 0:
            return None
        return PositionSize(quantity=quantity, notional=quantity * price, fraction=fraction)
