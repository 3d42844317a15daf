"""Auto-executor: thresholds, sizing, approval routing and guarded paper execution."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

import structlog

from paperpilot.config.store import TradingSettings
from paperpilot.errors import ExecutionError
from paperpilot.execution.approvals import ApprovalQueue
from paperpilot.execution.paper_broker import PaperBroker
from paperpilot.ledger.execution_log import ExecutionLedger
from paperpilot.ledger.locks import KeyedLocks
from paperpilot.ledger.store import StateStore
from paperpilot.models import ExecutionLogEntry, Recommendation, TradeApproval, new_id
from paperpilot.monitoring.metrics import Metrics
from paperpilot.risk.circuit_breaker import CircuitBreaker
from paperpilot.risk.engine import RiskValidator, TradeProposal
from paperpilot.risk.sizing import PositionSizer
from paperpilot.utils.scheduler import CycleDeadline


ExecutionStatus = Literal[
    "executed",
    "queued",
    "discarded",
    "skipped",
    "risk_denied",
    "circuit_open",
    "system_error",
    "expired",
    "not_found",
    "invalid_state",
]

# Outcomes that count as an execution attempt when computing the success rate.
ATTEMPT_OUTCOMES = frozenset({"executed", "failed", "risk_denied", "blocked"})


@dataclass(frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    symbol: str
    reason: str = ""
    recommendation_id: str | None = None
    approval_id: str | None = None
    quantity: float | None = None
    price: float | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in ("executed", "queued")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "symbol": self.symbol,
            "reason": self.reason,
            "recommendation_id": self.recommendation_id,
            "approval_id": self.approval_id,
            "quantity": self.quantity,
            "price": self.price,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class _Order:
    symbol: str
    side: Literal["BUY", "SELL"]
    quantity: float
    price: float
    stop_loss: float | None
    take_profit: float | None
    trigger: str
    recommendation_id: str | None
    approval_id: str | None = None
    volume_24h: float | None = None


class AutoExecutor:
    """Drive each recommendation through its state machine exactly once.

    received -> discarded (below threshold or manual-only mode)
    received -> queued (human approval required)
    received -> risk check -> breaker -> executed | risk_denied | circuit_open
    """

    def __init__(
        self,
        store: StateStore,
        ledger: ExecutionLedger,
        broker: PaperBroker,
        validator: RiskValidator,
        sizer: PositionSizer,
        breaker: CircuitBreaker,
        approvals: ApprovalQueue,
        locks: KeyedLocks,
        metrics: Metrics | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.broker = broker
        self.validator = validator
        self.sizer = sizer
        self.breaker = breaker
        self.approvals = approvals
        self.locks = locks
        self.metrics = metrics
        self._log = structlog.get_logger(__name__)

    async def process_pending(
        self,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float],
        volumes: dict[str, float] | None = None,
        deadline: CycleDeadline | None = None,
    ) -> list[ExecutionResult]:
        """Process every unexpired, unprocessed recommendation, isolating failures per symbol."""
        results: list[ExecutionResult] = []
        volumes = volumes or {}
        for rec in self.store.list_recommendations(now):
            if self.store.processed_outcome(rec.id) is not None:
                continue
            if deadline is not None and deadline.expired():
                self._log.warning("execution_deadline_reached", remaining_id=rec.id)
                break
            try:
                result = await self.process(rec, settings, now, prices, volumes.get(rec.symbol))
            except Exception as exc:
                self._log.error("recommendation_failed", symbol=rec.symbol, error=str(exc))
                if self.metrics:
                    self.metrics.symbol_failures_total.labels(stage="execution").inc()
                continue
            results.append(result)
        if results:
            self._log.info(
                "execution_cycle_summary",
                processed=len(results),
                executed=sum(1 for r in results if r.status == "executed"),
                queued=sum(1 for r in results if r.status == "queued"),
            )
        return results

    async def process(
        self,
        rec: Recommendation,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float] | None = None,
        volume_24h: float | None = None,
    ) -> ExecutionResult:
        prices = prices or {}
        if rec.action not in ("BUY", "SELL"):
            return self._result("skipped", rec, "HOLD recommendations are never executed")
        # Claim the id before any await so a concurrent caller sees it as processed.
        if not self.store.mark_processed(rec.id, "processing"):
            return self._result("skipped", rec, "recommendation already processed")

        result = await self._decide(rec, settings, now, prices, volume_24h)
        self.store.update_processed(rec.id, result.status)
        if self.metrics:
            self.metrics.executions_total.labels(status=result.status).inc()
        return result

    async def _decide(
        self,
        rec: Recommendation,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float],
        volume_24h: float | None,
    ) -> ExecutionResult:
        if rec.is_expired(now):
            return self._result("expired", rec, "recommendation expired")
        if rec.confidence < settings.confidence_threshold:
            self._log.info(
                "recommendation_discarded",
                symbol=rec.symbol,
                confidence=rec.confidence,
                threshold=settings.confidence_threshold,
            )
            return self._result(
                "discarded",
                rec,
                f"confidence {rec.confidence:.0f} below threshold {settings.confidence_threshold:.0f}",
            )
        if not settings.auto_execute:
            return self._result("discarded", rec, "auto-execute disabled (manual-only mode)")

        price = prices.get(rec.symbol, rec.entry_price)
        portfolio = self.store.portfolio
        if rec.action == "BUY":
            size = self.sizer.calculate_size(
                portfolio.total_value(prices),
                price,
                settings.position_sizing_strategy,  # type: ignore[arg-type]
                settings.max_position_size,
                rec.confidence,
            )
            if size is None:
                return self._result("risk_denied", rec, "position size calculated to 0")
            quantity = size.quantity
        else:
            position = portfolio.positions.get(rec.symbol)
            if position is None or position.quantity <= 0:
                return self._result("skipped", rec, f"no open position in {rec.symbol}")
            quantity = position.quantity

        if settings.human_approval:
            approval = self.approvals.create(rec, quantity, now)
            self._append(
                _Order(rec.symbol, rec.action, quantity, price, rec.stop_loss, rec.take_profit_1, "auto", rec.id),
                "queued",
                now,
                settings,
                approval_id=approval.id,
            )
            if self.metrics:
                self.metrics.pending_approvals.set(len(self.approvals.list_pending(now)))
            return ExecutionResult(
                "queued",
                rec.symbol,
                "awaiting human approval",
                recommendation_id=rec.id,
                approval_id=approval.id,
                quantity=quantity,
                price=price,
            )

        order = _Order(
            symbol=rec.symbol,
            side=rec.action,
            quantity=quantity,
            price=price,
            stop_loss=rec.stop_loss,
            take_profit=rec.take_profit_1,
            trigger="auto",
            recommendation_id=rec.id,
            volume_24h=volume_24h,
        )
        return await self._execute(order, settings, now, prices)

    async def execute_approved(
        self,
        approval: TradeApproval,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float] | None = None,
        volume_24h: float | None = None,
    ) -> ExecutionResult:
        """Execute an approved trade; risk limits and the breaker are re-checked now."""
        prices = prices or {}
        if approval.status != "approved":
            return ExecutionResult(
                "invalid_state",
                approval.symbol,
                f"approval is {approval.status}",
                recommendation_id=approval.recommendation_id,
                approval_id=approval.id,
            )
        order = _Order(
            symbol=approval.symbol,
            side=approval.action,
            quantity=approval.quantity,
            price=prices.get(approval.symbol, approval.entry_price),
            stop_loss=approval.stop_loss,
            take_profit=approval.take_profit,
            trigger="approval",
            recommendation_id=approval.recommendation_id,
            approval_id=approval.id,
            volume_24h=volume_24h,
        )
        result = await self._execute(order, settings, now, prices)
        self.store.update_processed(approval.recommendation_id, result.status)
        if self.metrics:
            self.metrics.executions_total.labels(status=result.status).inc()
        return result

    async def _execute(
        self,
        order: _Order,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float],
    ) -> ExecutionResult:
        # A trade that has started always completes, even if the cycle is cancelled.
        return await asyncio.shield(self._execute_locked(order, settings, now, prices))

    async def _execute_locked(
        self,
        order: _Order,
        settings: TradingSettings,
        now: datetime,
        prices: dict[str, float],
    ) -> ExecutionResult:
        async with self.locks.hold(order.symbol):
            started = time.perf_counter()
            portfolio = self.store.portfolio
            quantity = order.quantity
            if order.side == "SELL":
                position = portfolio.positions.get(order.symbol)
                if position is None:
                    self._append(order, "skipped", now, settings, started, reason="no open position")
                    return self._order_result("skipped", order, "no open position")
                quantity = min(quantity, position.quantity)

            proposal = TradeProposal(
                symbol=order.symbol,
                side=order.side,
                quantity=quantity,
                price=order.price,
                stop_loss=order.stop_loss,
                volume_24h=order.volume_24h,
            )
            decision = self.validator.validate_trade(proposal, portfolio, now, prices)
            if not decision.allowed:
                self._append(order, "risk_denied", now, settings, started, reason=decision.reason)
                self._log.info(
                    "trade_risk_denied",
                    symbol=order.symbol,
                    side=order.side,
                    codes=decision.codes,
                    reason=decision.reason,
                )
                return self._order_result("risk_denied", order, decision.reason)

            if not self.breaker.allow():
                self._append(order, "blocked", now, settings, started, reason="circuit breaker open")
                self._log.warning("trade_blocked_by_breaker", symbol=order.symbol, breaker=self.breaker.name)
                return self._order_result("circuit_open", order, f"circuit breaker '{self.breaker.name}' is open")

            try:
                fill = self.broker.apply(
                    portfolio,
                    order.side,
                    order.symbol,
                    quantity,
                    order.price,
                    now,
                    stop_loss=order.stop_loss,
                    take_profit=order.take_profit,
                )
            except ExecutionError as exc:
                self.breaker.record_failure()
                self._append(order, "failed", now, settings, started, reason=str(exc))
                self._log.error("trade_execution_failed", symbol=order.symbol, side=order.side, error=str(exc))
                return self._order_result("system_error", order, str(exc))

            self.breaker.record_success()
            self.store.save_portfolio()
            self._append(
                order,
                "executed",
                now,
                settings,
                started,
                quantity=fill.quantity,
                price=fill.fill_price,
                realized_pnl=fill.realized_pnl if order.side == "SELL" else None,
            )
            self._log.info(
                "trade_executed",
                symbol=order.symbol,
                side=order.side,
                quantity=fill.quantity,
                price=fill.fill_price,
                trigger=order.trigger,
            )
            return ExecutionResult(
                "executed",
                order.symbol,
                "trade executed",
                recommendation_id=order.recommendation_id,
                approval_id=order.approval_id,
                quantity=fill.quantity,
                price=fill.fill_price,
            )

    def get_execution_stats(self, now: datetime) -> dict[str, Any]:
        pending_recommendations = sum(
            1 for r in self.store.list_recommendations(now) if self.store.processed_outcome(r.id) is None
        )
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        executed_today = sum(
            1
            for e in self.ledger.since(start_of_day)
            if e.action == "execute" and e.outcome == "executed"
        )
        attempts = [
            e
            for e in self.ledger.since(now - timedelta(days=7))
            if e.action == "execute" and e.outcome in ATTEMPT_OUTCOMES
        ]
        successful = sum(1 for e in attempts if e.outcome == "executed")
        success_rate = successful / len(attempts) * 100 if attempts else 0.0
        return {
            "pending_recommendations": pending_recommendations,
            "pending_approvals": len(self.approvals.list_pending(now)),
            "executed_today": executed_today,
            "success_rate": round(success_rate),
        }

    def _append(
        self,
        order: _Order,
        outcome: str,
        now: datetime,
        settings: TradingSettings,
        started: float | None = None,
        reason: str | None = None,
        approval_id: str | None = None,
        quantity: float | None = None,
        price: float | None = None,
        realized_pnl: float | None = None,
    ) -> None:
        duration_ms = 0.0
        if started is not None:
            duration_ms = round((time.perf_counter() - started) * 1000, 3)
        self.ledger.append(
            ExecutionLogEntry(
                id=new_id(),
                timestamp=now,
                action="execute",
                symbol=order.symbol,
                outcome=outcome,
                trigger=order.trigger,
                side=order.side,
                quantity=quantity if quantity is not None else order.quantity,
                price=price if price is not None else order.price,
                realized_pnl=realized_pnl,
                recommendation_id=order.recommendation_id,
                approval_id=approval_id or order.approval_id,
                reason=reason,
                duration_ms=duration_ms,
                settings=settings.to_dict(),
            )
        )

    @staticmethod
    def _result(status: ExecutionStatus, rec: Recommendation, reason: str) -> ExecutionResult:
        return ExecutionResult(status, rec.symbol, reason, recommendation_id=rec.id)

    @staticmethod
    def _order_result(status: ExecutionStatus, order: _Order, reason: str) -> ExecutionResult:
        return ExecutionResult(
            status,
            order.symbol,
            reason,
            recommendation_id=order.recommendation_id,
            approval_id=order.approval_id,
            quantity=order.quantity,
            price=order.price,
        )
