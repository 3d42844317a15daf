"""Wiring of the decision loop and the operations exposed to operators."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from paperpilot.config.settings import Settings
from paperpilot.config.store import SettingsStore, TradingSettings
from paperpilot.connectors.base import MarketDataProvider, SentimentProvider
from paperpilot.execution.approvals import ApprovalQueue, ApprovalResolution
from paperpilot.execution.executor import AutoExecutor, ExecutionResult
from paperpilot.execution.monitor import MonitorReport, PositionMonitor
from paperpilot.features.indicators import technical_snapshot
from paperpilot.ledger.store import StateStore
from paperpilot.models import (
    BuyOpportunity,
    CoinCandidate,
    Recommendation,
    SellOpportunity,
    TradeApproval,
    utc_now,
)
from paperpilot.monitoring.metrics import Metrics
from paperpilot.risk.circuit_breaker import BreakerRegistry
from paperpilot.strategy.opportunities import OpportunityGate
from paperpilot.strategy.oracle import DecisionOracle, build_recommendation
from paperpilot.strategy.scoring import CoinAnalysis, DiscoverySummary, Scorer, get_profile, sentiment_to_score
from paperpilot.utils.scheduler import CycleDeadline


T = TypeVar("T")


@dataclass
class OpportunityScan:
    candidates: list[CoinCandidate]
    scanned_at: datetime | None
    cached: bool = False
    buy_opportunities: list[BuyOpportunity] = field(default_factory=list)
    sell_opportunities: list[SellOpportunity] = field(default_factory=list)
    analysis_log: list[CoinAnalysis] = field(default_factory=list)
    summary: DiscoverySummary | None = None


@dataclass
class RecommendationBatch:
    buy_recommendations: list[Recommendation] = field(default_factory=list)
    sell_recommendations: list[Recommendation] = field(default_factory=list)
    skipped_buy: int = 0
    skipped_sell: int = 0
    deferred: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "buy_recommendations": [r.to_dict() for r in self.buy_recommendations],
            "sell_recommendations": [r.to_dict() for r in self.sell_recommendations],
            "skipped": {"buy": self.skipped_buy, "sell": self.skipped_sell},
            "deferred": list(self.deferred),
            "metadata": dict(self.metadata),
        }


class TradingPipeline:
    """Scorer -> gate -> oracle -> executor, plus the independent monitor cycle.

    Every cycle reads one ``TradingSettings`` snapshot up front and uses it
    throughout; a settings failure aborts the cycle.
    """

    def __init__(
        self,
        settings: Settings,
        settings_store: SettingsStore,
        market: MarketDataProvider,
        store: StateStore,
        scorer: Scorer,
        gate: OpportunityGate,
        oracle: DecisionOracle,
        executor: AutoExecutor,
        approvals: ApprovalQueue,
        monitor: PositionMonitor,
        breakers: BreakerRegistry,
        sentiment: SentimentProvider | None = None,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.settings_store = settings_store
        self.market = market
        self.store = store
        self.scorer = scorer
        self.gate = gate
        self.oracle = oracle
        self.executor = executor
        self.approvals = approvals
        self.monitor = monitor
        self.breakers = breakers
        self.sentiment = sentiment
        self.metrics = metrics
        self.clock = clock
        self._log = structlog.get_logger(__name__)

    # Discovery

    async def find_opportunities(self, force_refresh: bool = False) -> OpportunityScan:
        return await self._find_opportunities(self.settings_store.load(), self.clock(), force_refresh)

    async def _find_opportunities(
        self,
        trading: TradingSettings,
        now: datetime,
        force_refresh: bool,
    ) -> OpportunityScan:
        scan = await self._scan_candidates(trading, now, force_refresh)
        positions = list(self.store.portfolio.positions.values())
        prices = await self._prices([p.symbol for p in positions])
        scan.buy_opportunities = self.gate.buy_opportunities(scan.candidates, [p.symbol for p in positions])
        scan.sell_opportunities = self.gate.sell_opportunities(positions, prices)
        self._log.info(
            "opportunities_found",
            buy=len(scan.buy_opportunities),
            sell=len(scan.sell_opportunities),
            cached=scan.cached,
        )
        return scan

    async def _scan_candidates(
        self,
        trading: TradingSettings,
        now: datetime,
        force_refresh: bool,
    ) -> OpportunityScan:
        scanned_at, cached = self.store.load_discovery()
        max_age = timedelta(minutes=self.settings.discovery.cache_minutes)
        if not force_refresh and scanned_at is not None and now - scanned_at < max_age:
            self._log.info("discovery_cache_hit", candidates=len(cached), scanned_at=scanned_at.isoformat())
            return OpportunityScan(candidates=cached, scanned_at=scanned_at, cached=True)

        try:
            snapshots = await self._external(self.market.get_snapshots(trading.universe_size))
        except Exception as exc:
            if scanned_at is None:
                raise
            self._log.warning("discovery_degraded_to_cache", error=str(exc), candidates=len(cached))
            return OpportunityScan(candidates=cached, scanned_at=scanned_at, cached=True)

        sentiment_scores = await self._sentiment_scores([s.symbol for s in snapshots])
        result = self.scorer.discover(
            snapshots,
            sentiment_scores,
            get_profile(trading.discovery_strategy),
            now,
        )
        candidates = result.candidates[: self.settings.discovery.candidate_limit]
        self.store.save_discovery(candidates, now)
        if self.metrics:
            self.metrics.candidates_scored.set(len(candidates))
        return OpportunityScan(
            candidates=candidates,
            scanned_at=now,
            analysis_log=result.analysis_log,
            summary=result.summary,
        )

    async def generate_recommendations(self, max_buy: int = 3, max_sell: int = 3) -> RecommendationBatch:
        return await self._generate(self.settings_store.load(), self.clock(), max_buy, max_sell)

    async def _generate(
        self,
        trading: TradingSettings,
        now: datetime,
        max_buy: int,
        max_sell: int,
        force_refresh: bool = False,
    ) -> RecommendationBatch:
        deadline = CycleDeadline(self.settings.scheduler.discovery_deadline_sec)
        scan = await self._find_opportunities(trading, now, force_refresh)
        buys = scan.buy_opportunities[:max_buy]
        sells = scan.sell_opportunities[:max_sell]

        batch = RecommendationBatch(
            metadata={
                "generated_at": now.isoformat(),
                "candidates": len(scan.candidates),
                "from_cache": scan.cached,
                "ai_model": trading.ai_model,
                "strategy_profile": trading.strategy_profile,
                "buy_opportunities": len(buys),
                "sell_opportunities": len(sells),
            }
        )
        for opportunity in [*buys, *sells]:
            is_buy = isinstance(opportunity, BuyOpportunity)
            if deadline.expired():
                batch.deferred.append(opportunity.symbol)
                continue
            try:
                rec = await self._recommend(opportunity, trading, now)
            except Exception as exc:
                self._log.error(
                    "recommendation_symbol_failed",
                    symbol=opportunity.symbol,
                    side="BUY" if is_buy else "SELL",
                    error=str(exc),
                )
                if self.metrics:
                    self.metrics.symbol_failures_total.labels(stage="advisory").inc()
                rec = None
            if rec is None:
                if is_buy:
                    batch.skipped_buy += 1
                else:
                    batch.skipped_sell += 1
                continue
            self.store.save_recommendation(rec)
            if self.metrics:
                self.metrics.recommendations_total.labels(action=rec.action, source=rec.source).inc()
            (batch.buy_recommendations if is_buy else batch.sell_recommendations).append(rec)

        if batch.deferred:
            self._log.warning("recommendation_deadline_reached", deferred=batch.deferred)
        self._log.info(
            "recommendations_generated",
            buy=len(batch.buy_recommendations),
            sell=len(batch.sell_recommendations),
            skipped_buy=batch.skipped_buy,
            skipped_sell=batch.skipped_sell,
        )
        return batch

    async def _recommend(
        self,
        opportunity: BuyOpportunity | SellOpportunity,
        trading: TradingSettings,
        now: datetime,
    ) -> Recommendation | None:
        symbol = opportunity.symbol
        history: list[float] = []
        try:
            history = await self._external(
                self.market.get_price_history(symbol, self.settings.opportunities.price_history_hours)
            )
        except Exception as exc:
            self._log.warning("price_history_unavailable", symbol=symbol, error=str(exc))
        technical = technical_snapshot(history, rsi_period=self.settings.opportunities.rsi_period)
        sentiment = await self._sentiment(symbol)

        if isinstance(opportunity, BuyOpportunity):
            candidate = opportunity.candidate
            side = "BUY"
            price = candidate.price
            market = {
                "change_24h": candidate.change_24h,
                "change_7d": candidate.change_7d,
                "volume_24h": candidate.volume_24h,
                "market_cap": candidate.market_cap,
                "composite_score": candidate.composite_score,
            }
            position = None
        else:
            side = "SELL"
            price = opportunity.current_price
            market = {}
            position = {
                "quantity": opportunity.quantity,
                "entry_price": opportunity.entry_price,
                "percent_gain": opportunity.percent_gain,
            }

        payload = {
            "symbol": symbol,
            "current_price": price,
            "side": side,
            "reason": opportunity.reason,
            "urgency": opportunity.urgency,
            "technical": technical.to_payload(),
            "market": market,
            "sentiment": sentiment,
            "position": position,
        }
        verdict = await self.oracle.advise(payload, trading.ai_model, trading.strategy_profile)
        return build_recommendation(
            verdict,
            symbol,
            side,  # type: ignore[arg-type]
            price,
            trading,
            now,
            default_stop_pct=self.settings.monitor.default_stop_loss_pct,
        )

    # Approvals

    def list_pending_approvals(self) -> list[TradeApproval]:
        pending = self.approvals.list_pending(self.clock())
        if self.metrics:
            self.metrics.pending_approvals.set(len(pending))
        return pending

    async def approve(self, approval_id: str) -> ExecutionResult:
        trading = self.settings_store.load()
        now = self.clock()
        resolution = await self.approvals.approve(approval_id, now)
        if resolution.status != "approved" or resolution.approval is None:
            approval = resolution.approval
            return ExecutionResult(
                resolution.status,  # type: ignore[arg-type]
                approval.symbol if approval else "",
                resolution.reason,
                recommendation_id=approval.recommendation_id if approval else None,
                approval_id=approval_id,
            )
        approval = resolution.approval
        prices = await self._prices([approval.symbol])
        return await self.executor.execute_approved(
            approval,
            trading,
            now,
            prices,
            volume_24h=(await self._volumes(trading, [approval.symbol])).get(approval.symbol),
        )

    async def reject(self, approval_id: str, reason: str) -> ApprovalResolution:
        return await self.approvals.reject(approval_id, reason, self.clock())

    # Cycles

    async def run_discovery_cycle(self) -> RecommendationBatch:
        return await self._generate(
            self.settings_store.load(),
            self.clock(),
            self.settings.opportunities.max_buy,
            self.settings.opportunities.max_sell,
            force_refresh=True,
        )

    async def run_execution_cycle(self) -> list[ExecutionResult]:
        trading = self.settings_store.load()
        now = self.clock()
        pending = [
            r for r in self.store.list_recommendations(now) if self.store.processed_outcome(r.id) is None
        ]
        if not pending:
            return []
        symbols = sorted({r.symbol for r in pending} | set(self.store.portfolio.positions))
        prices = await self._prices(symbols)
        deadline = CycleDeadline(self.settings.scheduler.execution_deadline_sec)
        volumes = await self._volumes(trading, sorted({r.symbol for r in pending}))
        return await self.executor.process_pending(trading, now, prices, volumes, deadline)

    async def run_monitor_cycle(self) -> MonitorReport:
        trading = self.settings_store.load()
        now = self.clock()
        symbols = sorted(self.store.portfolio.positions)
        if not symbols:
            return MonitorReport()
        prices = await self._prices(symbols)
        deadline = CycleDeadline(self.settings.scheduler.monitor_deadline_sec)
        report = await self.monitor.run_cycle(trading, prices, now, deadline)
        if self.metrics:
            self.metrics.update_portfolio(self.store.portfolio, prices)
        return report

    # Stats

    def get_execution_stats(self) -> dict[str, Any]:
        return self.executor.get_execution_stats(self.clock())

    def get_monitoring_stats(self) -> dict[str, Any]:
        return self.monitor.get_monitoring_stats(self.clock())

    def breaker_states(self) -> list[dict[str, Any]]:
        return [
            {
                "name": snap.name,
                "state": snap.state,
                "failure_count": snap.failure_count,
                "success_count": snap.success_count,
                "next_retry_at": snap.next_retry_at,
            }
            for snap in self.breakers.snapshots()
        ]

    # Helpers

    async def _external(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.execution.trade_timeout_sec)

    async def _prices(self, symbols: list[str]) -> dict[str, float]:
        if not symbols:
            return {}
        try:
            return await self._external(self.market.get_prices(symbols))
        except Exception as exc:
            self._log.warning("prices_unavailable", symbols=symbols, error=str(exc))
            return {}

    async def _sentiment(self, symbol: str) -> float | None:
        if self.sentiment is None or not self.settings.discovery.sentiment_enabled:
            return None
        try:
            return await self._external(self.sentiment.get_sentiment(symbol))
        except Exception as exc:
            self._log.warning("sentiment_unavailable", symbol=symbol, error=str(exc))
            return None

    async def _sentiment_scores(self, symbols: list[str]) -> dict[str, float]:
        semaphore = asyncio.Semaphore(self.settings.discovery.sentiment_concurrency)

        async def bounded(symbol: str) -> float | None:
            async with semaphore:
                return await self._sentiment(symbol)

        raw = await asyncio.gather(*(bounded(s) for s in symbols))
        return {s: sentiment_to_score(v) for s, v in zip(symbols, raw) if v is not None}

    async def _volumes(self, trading: TradingSettings, symbols: list[str]) -> dict[str, float]:
        """24h volumes from the discovery cache, refreshed from market data for symbols it lacks."""
        _, candidates = self.store.load_discovery()
        volumes = {c.symbol: c.volume_24h for c in candidates}
        missing = [s for s in symbols if s not in volumes]
        if not missing:
            return volumes
        try:
            snapshots = await self._external(self.market.get_snapshots(trading.universe_size))
        except Exception as exc:
            self._log.warning("volumes_unavailable", symbols=missing, error=str(exc))
            return volumes
        volumes.update({s.symbol: s.volume_24h for s in snapshots if s.symbol in missing})
        return volumes
