"""Paper fills: slippage, fees, cash and holding bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import structlog

from paperpilot.config.settings import PaperConfig
from paperpilot.errors import ExecutionError
from paperpilot.models import PortfolioState, Position


QTY_EPSILON = 1e-12


@dataclass(frozen=True)
class Fill:
    symbol: str
    side: Literal["BUY", "SELL"]
    quantity: float
    requested_price: float
    fill_price: float
    fee: float
    slippage: float
    total: float
    realized_pnl: float
    remaining_quantity: float
    timestamp: datetime


class PaperBroker:
    """Apply a fill to a portfolio in one step, or raise without touching it."""

    def __init__(self, config: PaperConfig) -> None:
        self.config = config
        self.fee_rate = config.fee_pct / 100
        self.slippage_rate = config.slippage_bps / 10_000
        self._log = structlog.get_logger(__name__)

    def apply(
        self,
        portfolio: PortfolioState,
        side: Literal["BUY", "SELL"],
        symbol: str,
        quantity: float,
        price: float,
        now: datetime,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Fill:
        if quantity <= 0 or price <= 0:
            raise ExecutionError(f"invalid order for {symbol}: qty={quantity} price={price}")
        if side == "BUY":
            fill = self._buy(portfolio, symbol, quantity, price, now, stop_loss, take_profit)
        else:
            fill = self._sell(portfolio, symbol, quantity, price, now)
        portfolio.last_trade_at[symbol] = now
        self._log.info(
            "paper_fill",
            symbol=symbol,
            side=side,
            quantity=fill.quantity,
            fill_price=fill.fill_price,
            fee=round(fill.fee, 8),
            realized_pnl=round(fill.realized_pnl, 8),
            remaining=fill.remaining_quantity,
        )
        return fill

    def _buy(
        self,
        portfolio: PortfolioState,
        symbol: str,
        quantity: float,
        price: float,
        now: datetime,
        stop_loss: float | None,
        take_profit: float | None,
    ) -> Fill:
        slippage = price * self.slippage_rate
        fill_price = price + slippage
        fee = fill_price * quantity * self.fee_rate
        total = fill_price * quantity + fee
        if total > portfolio.cash + QTY_EPSILON:
            raise ExecutionError(
                f"Insufficient funds: have ${portfolio.cash:.2f}, need ${total:.2f}"
            )

        existing = portfolio.positions.get(symbol)
        if existing is None:
            position = Position(
                symbol=symbol,
                quantity=quantity,
                avg_entry_price=fill_price,
                stop_loss=stop_loss,
                take_profit=take_profit,
                opened_at=now,
                protection_updated_at=now if stop_loss is not None else None,
                highest_price=fill_price,
            )
        else:
            new_qty = existing.quantity + quantity
            # An add-on never lowers an existing stop.
            stop = existing.stop_loss
            if stop_loss is not None and (stop is None or stop_loss > stop):
                stop = stop_loss
            avg = (existing.quantity * existing.avg_entry_price + quantity * fill_price) / new_qty
            position = Position(
                symbol=symbol,
                quantity=new_qty,
                avg_entry_price=avg,
                stop_loss=stop,
                take_profit=take_profit if take_profit is not None else existing.take_profit,
                opened_at=existing.opened_at,
                protection_updated_at=(
                    now if stop != existing.stop_loss or take_profit is not None
                    else existing.protection_updated_at
                ),
                partial_exits=existing.partial_exits,
                highest_price=max(existing.highest_price, fill_price),
            )

        portfolio.cash -= total
        portfolio.positions[symbol] = position
        return Fill(
            symbol=symbol,
            side="BUY",
            quantity=quantity,
            requested_price=price,
            fill_price=fill_price,
            fee=fee,
            slippage=slippage,
            total=total,
            realized_pnl=0.0,
            remaining_quantity=position.quantity,
            timestamp=now,
        )

    def _sell(
        self,
        portfolio: PortfolioState,
        symbol: str,
        quantity: float,
        price: float,
        now: datetime,
    ) -> Fill:
        existing = portfolio.positions.get(symbol)
        held = existing.quantity if existing else 0.0
        if existing is None or quantity > held + QTY_EPSILON:
            raise ExecutionError(
                f"Insufficient quantity: have {held}, trying to sell {quantity}"
            )
        quantity = min(quantity, held)
        slippage = price * self.slippage_rate
        fill_price = price - slippage
        fee = fill_price * quantity * self.fee_rate
        proceeds = fill_price * quantity - fee
        realized = (fill_price - existing.avg_entry_price) * quantity - fee
        remaining = held - quantity

        portfolio.cash += proceeds
        portfolio.book_realized_pnl(realized, now)
        if remaining <= QTY_EPSILON:
            del portfolio.positions[symbol]
            remaining = 0.0
        else:
            existing.quantity = remaining
        return Fill(
            symbol=symbol,
            side="SELL",
            quantity=quantity,
            requested_price=price,
            fill_price=fill_price,
            fee=fee,
            slippage=slippage,
            total=proceeds,
            realized_pnl=realized,
            remaining_quantity=remaining,
            timestamp=now,
        )
