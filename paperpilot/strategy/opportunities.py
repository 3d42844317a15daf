"""Classify scored candidates and holdings into buy and sell opportunities."""

from __future__ import annotations

from typing import Iterable

from paperpilot.models import BuyOpportunity, CoinCandidate, Position, SellOpportunity


URGENCY_RANK = {"high": 0, "medium": 1, "low": 2}


def classify_buy(candidate: CoinCandidate) -> BuyOpportunity:
    """First matching rule wins."""
    if candidate.momentum_score > 70 and candidate.volume_score > 70:
        return BuyOpportunity(candidate.symbol, "breakout", "high", candidate)
    if candidate.momentum_score < 40 and candidate.composite_score > 65:
        return BuyOpportunity(candidate.symbol, "dip", "medium", candidate)
    if candidate.composite_score > 75:
        return BuyOpportunity(candidate.symbol, "discovery", "high", candidate)
    return BuyOpportunity(candidate.symbol, "discovery", "medium", candidate)


def classify_sell(position: Position, current_price: float) -> SellOpportunity | None:
    """Map percent gain onto a sell band.

    A gain sitting exactly on a band edge lands in the more urgent band.
    """
    gain = position.percent_gain(current_price)
    if gain >= 50:
        reason, urgency = "profit_target", "high"
    elif gain >= 25:
        reason, urgency = "profit_target", "medium"
    elif gain <= -20:
        reason, urgency = "risk_management", "high"
    elif gain <= -10:
        reason, urgency = "risk_management", "medium"
    elif gain >= 10:
        reason, urgency = "resistance", "low"
    else:
        return None
    return SellOpportunity(
        symbol=position.symbol,
        reason=reason,
        urgency=urgency,
        quantity=position.quantity,
        entry_price=position.avg_entry_price,
        current_price=current_price,
        unrealized_pnl=position.unrealized_pnl(current_price),
        percent_gain=gain,
    )


class OpportunityGate:
    """Turn a discovery batch plus the current holdings into ranked opportunity lists."""

    def buy_opportunities(
        self,
        candidates: Iterable[CoinCandidate],
        held_symbols: Iterable[str],
    ) -> list[BuyOpportunity]:
        held = set(held_symbols)
        opportunities = [classify_buy(c) for c in candidates if c.symbol not in held]
        opportunities.sort(key=lambda o: -o.candidate.composite_score)
        return opportunities

    def sell_opportunities(
        self,
        positions: Iterable[Position],
        prices: dict[str, float],
    ) -> list[SellOpportunity]:
        opportunities: list[SellOpportunity] = []
        for position in positions:
            price = prices.get(position.symbol)
            if price is None or position.quantity <= 0:
                continue
            opportunity = classify_sell(position, price)
            if opportunity:
                opportunities.append(opportunity)
        opportunities.sort(key=lambda o: (URGENCY_RANK[o.urgency], -abs(o.percent_gain)))
        return opportunities
