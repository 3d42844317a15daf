"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from paperpilot.models import PortfolioState


BREAKER_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


class Metrics:
    """Expose core metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        reg = self.registry
        self.loop_last_tick_age_sec = Gauge(
            "loop_last_tick_age_sec",
            "Seconds since the loop last ticked",
            ["loop"],
            registry=reg,
        )
        self.cycle_duration_sec = Histogram(
            "cycle_duration_sec", "Duration of a scheduled cycle", ["job"], registry=reg
        )
        self.cycle_skipped_total = Counter(
            "cycle_skipped_total",
            "Ticks skipped because the previous run was still active",
            ["job"],
            registry=reg,
        )
        self.cycle_failed_total = Counter(
            "cycle_failed_total", "Cycles aborted by an error", ["job"], registry=reg
        )
        self.symbol_failures_total = Counter(
            "symbol_failures_total", "Per-symbol failures isolated at the symbol boundary",
            ["stage"],
            registry=reg,
        )

        self.candidates_scored = Gauge("candidates_scored", "Candidates passing discovery", registry=reg)
        self.recommendations_total = Counter(
            "recommendations_total", "Recommendations created", ["action", "source"], registry=reg
        )
        self.advisory_fallback_total = Counter(
            "advisory_fallback_total", "Advisory calls answered by the local heuristic", registry=reg
        )

        self.executions_total = Counter(
            "executions_total", "Execution attempts by status", ["status"], registry=reg
        )
        self.exits_total = Counter("exits_total", "Position exits by trigger", ["trigger"], registry=reg)
        self.pending_approvals = Gauge("pending_approvals", "Approvals awaiting a decision", registry=reg)

        self.open_positions = Gauge("open_positions", "Number of open positions", registry=reg)
        self.portfolio_value = Gauge("portfolio_value", "Paper portfolio value", registry=reg)
        self.daily_pnl_percent = Gauge("daily_pnl_percent", "Daily realized PnL percent", registry=reg)
        self.circuit_breaker_state = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["breaker"],
            registry=reg,
        )

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)

    def update_portfolio(self, portfolio: PortfolioState, prices: dict[str, float] | None = None) -> None:
        self.open_positions.set(len(portfolio.positions))
        value = portfolio.total_value(prices)
        self.portfolio_value.set(value)
        if value > 0:
            self.daily_pnl_percent.set(portfolio.realized_pnl_today / value * 100)

    def set_breaker_state(self, name: str, state: str) -> None:
        self.circuit_breaker_state.labels(breaker=name).set(BREAKER_STATE_VALUES.get(state, 0))
