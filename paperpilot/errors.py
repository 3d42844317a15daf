"""Exception types shared across the decision loop."""

from __future__ import annotations


class PaperPilotError(Exception):
    """Base class for errors raised by the trading core."""


class InvariantViolation(PaperPilotError):
    """A value or transition that must never exist was requested."""


class StopLossRatchetError(InvariantViolation):
    def __init__(self, symbol: str, current: float, proposed: float) -> None:
        self.symbol = symbol
        self.current = current
        self.proposed = proposed
        super().__init__(
            f"Refusing to lower stop-loss for {symbol}: {current:.8g} -> {proposed:.8g}"
        )


class InvalidTransition(PaperPilotError):
    """An approval was asked to leave a terminal state."""


class CircuitOpenError(PaperPilotError):
    def __init__(self, name: str, retry_at: float | None) -> None:
        self.name = name
        self.retry_at = retry_at
        super().__init__(f"Circuit breaker '{name}' is open")


class AdvisoryUnavailable(PaperPilotError):
    """Every configured advisory provider failed for a request."""


class ExecutionError(PaperPilotError):
    """The paper broker refused to apply a fill."""


class SettingsUnavailable(PaperPilotError):
    """The settings snapshot for a cycle could not be read."""
