"""Technical indicators module."""

from paperpilot.features.indicators import (
    TechnicalSnapshot,
    calculate_ema,
    calculate_rsi,
    technical_snapshot,
)

__all__ = ["calculate_ema", "calculate_rsi", "technical_snapshot", "TechnicalSnapshot"]
