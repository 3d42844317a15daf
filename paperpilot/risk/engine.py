"""Deterministic trade validation against hard portfolio limits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, Literal

from paperpilot.config.settings import RiskConfig
from paperpilot.models import PortfolioState


# Static estimate of pairs that move together; unknown pairs are treated as weakly correlated.
CORRELATION_GROUPS: dict[str, tuple[str, ...]] = {
    "BTC": ("ETH", "BNB", "LTC", "BCH"),
    "ETH": ("BTC", "BNB", "MATIC", "LINK"),
    "BNB": ("BTC", "ETH"),
    "LTC": ("BTC", "BCH"),
    "BCH": ("BTC", "LTC"),
    "MATIC": ("ETH",),
    "LINK": ("ETH",),
}
CORRELATED_ESTIMATE = 0.8
UNCORRELATED_ESTIMATE = 0.3


@dataclass(frozen=True)
class TradeProposal:
    symbol: str
    side: Literal["BUY", "SELL"]
    quantity: float
    price: float
    stop_loss: float | None
    volume_24h: float | None = None


@dataclass(frozen=True)
class RiskViolation:
    code: str
    message: str


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    violations: list[RiskViolation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    requires_confirmation: bool = False

    @property
    def reasons(self) -> list[str]:
        return [v.message for v in self.violations]

    @property
    def codes(self) -> list[str]:
        return [v.code for v in self.violations]

    @property
    def reason(self) -> str:
        if self.violations:
            return self.violations[0].message
        if self.warnings:
            return "Trade allowed with warnings"
        return "All risk checks passed"


def estimate_correlation(symbol: str, held: list[str]) -> float:
    related = CORRELATION_GROUPS.get(symbol, ())
    if any(other in related for other in held):
        return CORRELATED_ESTIMATE
    return UNCORRELATED_ESTIMATE


class RiskValidator:
    """Evaluate trade proposals against hard risk rules.

    Automated trades stop at the first violation. Manual trades collect every
    soft violation as a warning and require confirmation; a BUY without a valid
    stop-loss is rejected on both paths.
    """

    HARD_MAX_POSITION_PCT = 5.0
    HARD_MAX_PORTFOLIO_RISK_PCT = 15.0
    HARD_MAX_DAILY_LOSS_PCT = 3.0
    HARD_MAX_OPEN_POSITIONS = 5
    DEFAULT_STOP_PCT_FOR_RISK = 10.0

    def __init__(self, config: RiskConfig) -> None:
        self.config = config
        self.max_position_pct = min(config.max_position_pct, self.HARD_MAX_POSITION_PCT)
        self.max_portfolio_risk_pct = min(config.max_portfolio_risk_pct, self.HARD_MAX_PORTFOLIO_RISK_PCT)
        self.max_daily_loss_pct = min(config.max_daily_loss_pct, self.HARD_MAX_DAILY_LOSS_PCT)
        self.max_open_positions = min(config.max_open_positions, self.HARD_MAX_OPEN_POSITIONS)

    def validate_trade(
        self,
        proposal: TradeProposal,
        portfolio: PortfolioState,
        now: datetime,
        prices: dict[str, float] | None = None,
        manual: bool = False,
    ) -> RiskDecision:
        if proposal.side == "SELL":
            return RiskDecision(allowed=True)

        hard = self._stop_loss_violations(proposal)
        if hard:
            return RiskDecision(allowed=False, violations=hard)

        violations: list[RiskViolation] = []
        for violation in self._limit_checks(proposal, portfolio, now, prices or {}):
            if not manual:
                return RiskDecision(allowed=False, violations=[violation])
            violations.append(violation)

        if manual and violations:
            return RiskDecision(
                allowed=True,
                warnings=[v.message for v in violations],
                requires_confirmation=True,
            )
        return RiskDecision(allowed=True)

    def portfolio_risk(self, portfolio: PortfolioState) -> float:
        """Potential loss if every open position were stopped out."""
        total = 0.0
        for pos in portfolio.positions.values():
            stop = pos.stop_loss
            if stop is None:
                stop = pos.avg_entry_price * (1 - self.DEFAULT_STOP_PCT_FOR_RISK / 100)
            total += pos.quantity * max(0.0, pos.avg_entry_price - stop)
        return total

    def _stop_loss_violations(self, proposal: TradeProposal) -> list[RiskViolation]:
        if proposal.stop_loss is None or proposal.stop_loss <= 0:
            return [RiskViolation("STOP_LOSS_MISSING", "Stop-loss is required for BUY orders")]
        if proposal.stop_loss >= proposal.price:
            return [
                RiskViolation(
                    "STOP_LOSS_ABOVE_ENTRY",
                    f"Stop-loss {proposal.stop_loss:.8g} must be below entry price {proposal.price:.8g}",
                )
            ]
        distance_pct = (proposal.price - proposal.stop_loss) / proposal.price * 100
        if distance_pct > self.config.max_stop_distance_pct:
            return [
                RiskViolation(
                    "STOP_TOO_WIDE",
                    f"Stop-loss is {distance_pct:.1f}% below entry; maximum is "
                    f"{self.config.max_stop_distance_pct:.1f}%",
                )
            ]
        return []

    def _limit_checks(
        self,
        proposal: TradeProposal,
        portfolio: PortfolioState,
        now: datetime,
        prices: dict[str, float],
    ) -> Iterator[RiskViolation]:
        total_value = portfolio.total_value(prices)
        if total_value <= 0:
            yield RiskViolation("PORTFOLIO_EMPTY", "Portfolio value is zero")
            return
        notional = proposal.quantity * proposal.price

        position_pct = notional / total_value * 100
        if position_pct > self.max_position_pct:
            yield RiskViolation(
                "POSITION_TOO_LARGE",
                f"Position size {position_pct:.1f}% exceeds maximum {self.max_position_pct:.1f}%",
            )

        held = [s for s, p in portfolio.positions.items() if p.quantity > 0]
        if proposal.symbol not in held and len(held) >= self.max_open_positions:
            yield RiskViolation(
                "MAX_POSITIONS_REACHED",
                f"Maximum of {self.max_open_positions} open positions reached",
            )

        if proposal.volume_24h is None:
            yield RiskViolation(
                "VOLUME_UNKNOWN",
                f"24h volume for {proposal.symbol} is unknown; minimum is ${self.config.min_volume_usd:,.0f}",
            )
        elif proposal.volume_24h < self.config.min_volume_usd:
            yield RiskViolation(
                "VOLUME_TOO_LOW",
                f"24h volume ${proposal.volume_24h:,.0f} is below minimum ${self.config.min_volume_usd:,.0f}",
            )

        new_risk = proposal.quantity * (proposal.price - (proposal.stop_loss or 0.0))
        total_risk_pct = (self.portfolio_risk(portfolio) + new_risk) / total_value * 100
        if total_risk_pct > self.max_portfolio_risk_pct:
            yield RiskViolation(
                "PORTFOLIO_RISK_EXCEEDED",
                f"Total portfolio risk {total_risk_pct:.1f}% would exceed maximum "
                f"{self.max_portfolio_risk_pct:.1f}%",
            )

        realized_today = portfolio.realized_pnl_for(now)
        if realized_today < 0:
            loss_pct = -realized_today / total_value * 100
            if loss_pct >= self.max_daily_loss_pct:
                yield RiskViolation(
                    "DAILY_LOSS_LIMIT",
                    f"Daily loss {loss_pct:.1f}% has reached the limit of {self.max_daily_loss_pct:.1f}%",
                )

        last_trade = portfolio.last_trade_at.get(proposal.symbol)
        interval = timedelta(minutes=self.config.min_trade_interval_minutes)
        if last_trade is not None and now - last_trade < interval:
            minutes_left = (interval - (now - last_trade)).total_seconds() / 60
            yield RiskViolation(
                "TRADE_TOO_SOON",
                f"Last {proposal.symbol} trade was less than "
                f"{self.config.min_trade_interval_minutes} minutes ago ({minutes_left:.0f} min remaining)",
            )

        others = [s for s in held if s != proposal.symbol]
        if others:
            correlation = estimate_correlation(proposal.symbol, others)
            if correlation > self.config.max_correlation:
                yield RiskViolation(
                    "CORRELATION_TOO_HIGH",
                    f"Position correlation {correlation * 100:.0f}% exceeds maximum "
                    f"{self.config.max_correlation * 100:.0f}%",
                )
