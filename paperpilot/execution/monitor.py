"""Position monitor: plan exits and stop changes, then apply them."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal

import structlog

from paperpilot.config.settings import MonitorConfig
from paperpilot.config.store import TradingSettings
from paperpilot.errors import ExecutionError, StopLossRatchetError
from paperpilot.execution.paper_broker import PaperBroker
from paperpilot.ledger.execution_log import ExecutionLedger
from paperpilot.ledger.locks import KeyedLocks
from paperpilot.ledger.store import StateStore
from paperpilot.models import ExecutionLogEntry, Position, new_id
from paperpilot.monitoring.metrics import Metrics
from paperpilot.risk.circuit_breaker import CircuitBreaker
from paperpilot.utils.scheduler import CycleDeadline


ExitTrigger = Literal["stop_loss", "take_profit", "partial_take_profit"]


@dataclass(frozen=True)
class ExitAction:
    symbol: str
    trigger: ExitTrigger
    quantity: float
    price: float
    full_exit: bool
    # Stop to set on the remaining position after a partial exit.
    new_stop: float | None = None


@dataclass(frozen=True)
class StopAction:
    symbol: str
    trigger: Literal["trailing_stop", "auto_stop_loss"]
    price: float
    new_stop: float | None
    new_high: float | None = None


MonitorAction = ExitAction | StopAction


def ratchet_stop(position: Position, new_stop: float, now: datetime) -> bool:
    """Raise the stop-loss; lowering it is an invariant violation.

    Returns whether the stop changed.
    """
    current = position.stop_loss
    if current is not None and new_stop < current:
        raise StopLossRatchetError(position.symbol, current, new_stop)
    if current is not None and new_stop == current:
        return False
    position.stop_loss = new_stop
    position.protection_updated_at = now
    return True


def plan_position(
    settings: TradingSettings,
    position: Position,
    price: float,
    config: MonitorConfig,
) -> list[MonitorAction]:
    """Actions for one position at one observed price.

    The stop-loss check runs before any take-profit logic and a triggered stop
    ends the evaluation.
    """
    actions: list[MonitorAction] = []
    if position.quantity <= 0 or price <= 0:
        return actions

    stop = position.stop_loss
    if stop is None and settings.auto_stop_loss:
        stop = position.avg_entry_price * (1 - config.default_stop_loss_pct / 100)
        actions.append(StopAction(position.symbol, "auto_stop_loss", price, new_stop=stop))

    if stop is not None and price <= stop:
        actions.append(
            ExitAction(position.symbol, "stop_loss", position.quantity, price, full_exit=True)
        )
        return actions

    strategy = settings.take_profit_strategy
    if strategy == "trailing":
        high = max(position.highest_price, price)
        candidate = high * (1 - config.trailing_stop_pct / 100)
        raise_stop = stop is None or candidate > stop
        if raise_stop or high > position.highest_price:
            actions.append(
                StopAction(
                    position.symbol,
                    "trailing_stop",
                    price,
                    new_stop=candidate if raise_stop else None,
                    new_high=high if high > position.highest_price else None,
                )
            )
        return actions

    take_profit = position.take_profit
    if take_profit is None or price < take_profit:
        return actions

    if strategy == "full":
        actions.append(
            ExitAction(position.symbol, "take_profit", position.quantity, price, full_exit=True)
        )
        return actions

    sell_qty = position.quantity * config.partial_exit_fraction
    remaining = position.quantity - sell_qty
    if remaining * price < config.min_remaining_notional:
        actions.append(
            ExitAction(position.symbol, "take_profit", position.quantity, price, full_exit=True)
        )
        return actions
    breakeven = None
    if position.partial_exits == 0 and (stop is None or stop < position.avg_entry_price):
        breakeven = position.avg_entry_price
    actions.append(
        ExitAction(
            position.symbol,
            "partial_take_profit",
            sell_qty,
            price,
            full_exit=False,
            new_stop=breakeven,
        )
    )
    return actions


def plan_actions(
    settings: TradingSettings,
    positions: Iterable[Position],
    prices: dict[str, float],
    config: MonitorConfig,
) -> list[MonitorAction]:
    """Pure planning over every position with a known price."""
    actions: list[MonitorAction] = []
    for position in positions:
        price = prices.get(position.symbol)
        if price is None:
            continue
        actions.extend(plan_position(settings, position, price, config))
    return actions


@dataclass
class MonitorReport:
    checked: int = 0
    exits: list[ExitAction] = field(default_factory=list)
    stop_updates: list[StopAction] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)


class PositionMonitor:
    """Apply planned monitor actions, one symbol at a time under its lock."""

    def __init__(
        self,
        store: StateStore,
        ledger: ExecutionLedger,
        broker: PaperBroker,
        breaker: CircuitBreaker,
        locks: KeyedLocks,
        config: MonitorConfig,
        metrics: Metrics | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.broker = broker
        self.breaker = breaker
        self.locks = locks
        self.config = config
        self.metrics = metrics
        self._log = structlog.get_logger(__name__)

    async def run_cycle(
        self,
        settings: TradingSettings,
        prices: dict[str, float],
        now: datetime,
        deadline: CycleDeadline | None = None,
    ) -> MonitorReport:
        report = MonitorReport()
        for symbol in sorted(self.store.portfolio.positions):
            if deadline is not None and deadline.expired():
                report.deferred.append(symbol)
                continue
            price = prices.get(symbol)
            if price is None:
                self._log.warning("monitor_price_missing", symbol=symbol)
                continue
            report.checked += 1
            try:
                await asyncio.shield(self._evaluate_symbol(symbol, price, settings, now, report))
            except Exception as exc:
                self._log.error("monitor_symbol_failed", symbol=symbol, error=str(exc))
                report.failed.append(symbol)
                if self.metrics:
                    self.metrics.symbol_failures_total.labels(stage="monitor").inc()
        if report.deferred:
            self._log.warning("monitor_deadline_reached", deferred=report.deferred)
        return report

    async def _evaluate_symbol(
        self,
        symbol: str,
        price: float,
        settings: TradingSettings,
        now: datetime,
        report: MonitorReport,
    ) -> None:
        async with self.locks.hold(symbol):
            position = self.store.portfolio.positions.get(symbol)
            if position is None:
                return
            for action in plan_position(settings, position, price, self.config):
                if isinstance(action, StopAction):
                    self._apply_stop(position, action, settings, now)
                    report.stop_updates.append(action)
                    continue
                if self._apply_exit(action, settings, now):
                    report.exits.append(action)
                else:
                    report.blocked.append(symbol)
            self.store.save_portfolio()

    def get_monitoring_stats(self, now: datetime) -> dict[str, Any]:
        positions = list(self.store.portfolio.positions.values())
        exits = [
            e for e in self.ledger.window(now, 24) if e.action == "exit" and e.outcome == "executed"
        ]
        holding_hours = [(now - p.opened_at).total_seconds() / 3600 for p in positions]
        return {
            "open_positions": len(positions),
            "stop_losses_triggered_24h": sum(1 for e in exits if e.trigger == "stop_loss"),
            "take_profits_triggered_24h": sum(1 for e in exits if e.trigger.endswith("take_profit")),
            "avg_holding_hours": round(sum(holding_hours) / len(holding_hours), 2) if holding_hours else 0.0,
        }

    def _apply_stop(
        self,
        position: Position,
        action: StopAction,
        settings: TradingSettings,
        now: datetime,
    ) -> None:
        previous = position.stop_loss
        if action.new_high is not None:
            position.highest_price = action.new_high
        changed = False
        if action.new_stop is not None:
            changed = ratchet_stop(position, action.new_stop, now)
        if changed:
            self._log.info(
                "stop_loss_updated",
                symbol=position.symbol,
                trigger=action.trigger,
                previous=previous,
                stop_loss=position.stop_loss,
            )
            self.ledger.append(
                ExecutionLogEntry(
                    id=new_id(),
                    timestamp=now,
                    action="stop_update",
                    symbol=position.symbol,
                    outcome="updated",
                    trigger=action.trigger,
                    price=action.price,
                    reason=f"stop {previous} -> {position.stop_loss}",
                    settings=settings.to_dict(),
                )
            )

    def _apply_exit(self, action: ExitAction, settings: TradingSettings, now: datetime) -> bool:
        started = time.perf_counter()
        if not self.breaker.allow():
            self._record_exit(action, settings, now, "blocked", started, reason="circuit breaker open")
            self._log.warning("exit_blocked_by_breaker", symbol=action.symbol, trigger=action.trigger)
            return False
        portfolio = self.store.portfolio
        position = portfolio.positions[action.symbol]
        try:
            fill = self.broker.apply(portfolio, "SELL", action.symbol, action.quantity, action.price, now)
        except ExecutionError as exc:
            self.breaker.record_failure()
            self._record_exit(action, settings, now, "failed", started, reason=str(exc))
            raise
        self.breaker.record_success()
        if not action.full_exit:
            position.partial_exits += 1
            if action.new_stop is not None:
                ratchet_stop(position, action.new_stop, now)
        self._record_exit(
            action,
            settings,
            now,
            "executed",
            started,
            realized_pnl=fill.realized_pnl,
            price=fill.fill_price,
        )
        if self.metrics:
            self.metrics.exits_total.labels(trigger=action.trigger).inc()
        self._log.info(
            "position_exit",
            symbol=action.symbol,
            trigger=action.trigger,
            quantity=fill.quantity,
            remaining=fill.remaining_quantity,
            price=fill.fill_price,
            realized_pnl=round(fill.realized_pnl, 8),
        )
        return True

    def _record_exit(
        self,
        action: ExitAction,
        settings: TradingSettings,
        now: datetime,
        outcome: str,
        started: float,
        reason: str | None = None,
        realized_pnl: float | None = None,
        price: float | None = None,
    ) -> None:
        self.ledger.append(
            ExecutionLogEntry(
                id=new_id(),
                timestamp=now,
                action="exit",
                symbol=action.symbol,
                outcome=outcome,
                trigger=action.trigger,
                side="SELL",
                quantity=action.quantity,
                price=price if price is not None else action.price,
                realized_pnl=realized_pnl,
                reason=reason,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
                settings=settings.to_dict(),
            )
        )
