"""Risk management module."""

from paperpilot.risk.circuit_breaker import BreakerRegistry, CircuitBreaker
from paperpilot.risk.engine import RiskDecision, RiskValidator, TradeProposal
from paperpilot.risk.sizing import PositionSizer

__all__ = [
    "BreakerRegistry",
    "CircuitBreaker",
    "RiskDecision",
    "RiskValidator",
    "TradeProposal",
    "PositionSizer",
]
