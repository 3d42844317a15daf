"""Main runtime for the paper-trading loop."""

from __future__ import annotations

import asyncio
import atexit
import sys
from datetime import timedelta
from pathlib import Path

import structlog
import uvicorn

from paperpilot.api.operator import create_app
from paperpilot.config.settings import Settings, load_settings
from paperpilot.config.store import SettingsStore
from paperpilot.connectors import AnthropicAdvisor, CoinGeckoClient, LocalAdvisor, OpenAIAdvisor
from paperpilot.connectors.base import Advisor, MarketDataProvider
from paperpilot.execution.approvals import ApprovalQueue
from paperpilot.execution.executor import AutoExecutor
from paperpilot.execution.monitor import PositionMonitor
from paperpilot.execution.paper_broker import PaperBroker
from paperpilot.ledger import ExecutionLedger, KeyedLocks, StateStore
from paperpilot.monitoring import Metrics, configure_logging
from paperpilot.pipeline import TradingPipeline
from paperpilot.risk import BreakerRegistry, PositionSizer, RiskValidator
from paperpilot.strategy import DecisionOracle, OpportunityGate, Scorer
from paperpilot.utils.scheduler import PeriodicJob
from paperpilot.utils.single_instance import RuntimeAlreadyRunning, SingleInstanceLock

log = structlog.get_logger(__name__)


def build_pipeline(
    settings: Settings,
    metrics: Metrics | None = None,
    market: MarketDataProvider | None = None,
) -> TradingPipeline:
    """Assemble every component from one ``Settings`` object.

    ``market`` replaces the CoinGecko client; it also serves sentiment.
    """
    breakers = BreakerRegistry(
        settings.breakers,
        on_state_change=metrics.set_breaker_state if metrics else None,
    )
    store = StateStore(settings.storage.state_path, initial_cash=settings.paper.initial_cash)
    ledger = ExecutionLedger(settings.storage.ledger_path)
    locks = KeyedLocks()
    if market is None:
        market = CoinGeckoClient(
            settings.market_data,
            api_key=settings.coingecko_api_key,
            breaker=breakers.market_data,
        )

    advisors: dict[str, Advisor] = {}
    if settings.openai_api_key:
        advisors["openai"] = OpenAIAdvisor(settings.llm, settings.openai_api_key)
    if settings.anthropic_api_key:
        advisors["anthropic"] = AnthropicAdvisor(settings.llm, settings.anthropic_api_key)
    oracle = DecisionOracle(advisors, LocalAdvisor(), breaker=breakers.advisory, metrics=metrics)

    broker = PaperBroker(settings.paper)
    approvals = ApprovalQueue(
        store,
        ledger,
        locks,
        ttl=timedelta(minutes=settings.execution.approval_ttl_minutes),
    )
    executor = AutoExecutor(
        store,
        ledger,
        broker,
        RiskValidator(settings.risk),
        PositionSizer(hard_max_pct=RiskValidator.HARD_MAX_POSITION_PCT),
        breakers.execution,
        approvals,
        locks,
        metrics=metrics,
    )
    monitor = PositionMonitor(
        store,
        ledger,
        broker,
        breakers.execution,
        locks,
        settings.monitor,
        metrics=metrics,
    )
    settings_store = SettingsStore(
        settings.trading,
        Path(settings.storage.state_path) / "trading_settings.yaml",
    )
    return TradingPipeline(
        settings=settings,
        settings_store=settings_store,
        market=market,
        store=store,
        scorer=Scorer(),
        gate=OpportunityGate(),
        oracle=oracle,
        executor=executor,
        approvals=approvals,
        monitor=monitor,
        breakers=breakers,
        sentiment=market,  # type: ignore[arg-type]
        metrics=metrics,
    )


async def main_async() -> None:
    settings = load_settings()
    configure_logging(settings.monitoring.log_level, settings.storage.logs_path, settings.monitoring)
    if sys.version_info < (3, 10):
        log.warning(
            "python_version_unsupported",
            version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        )
    errors = settings.validate_for_runtime()
    if errors:
        log.error("settings_validation_failed", errors=errors)
        return

    instance_lock = SingleInstanceLock(settings.storage.state_path)
    try:
        owner = instance_lock.acquire()
    except RuntimeAlreadyRunning as exc:
        held_by = exc.owner
        log.error(
            "another_instance_running",
            lock_path=exc.lock_path,
            pid=exc.pid,
            host=held_by.host if held_by else None,
            since=held_by.started_at if held_by else None,
        )
        return
    log.info("runtime_lock_acquired", lock_path=str(instance_lock.path), pid=owner.pid, host=owner.host)
    atexit.register(instance_lock.release)

    metrics = Metrics()
    metrics.start(settings.monitoring.metrics_port)
    pipeline = build_pipeline(settings, metrics)
    for snapshot in pipeline.breakers.snapshots():
        metrics.set_breaker_state(snapshot.name, snapshot.state)
    log.info(
        "runtime_started",
        ai_model=settings.trading.ai_model,
        auto_execute=settings.trading.auto_execute,
        human_approval=settings.trading.human_approval,
        metrics_port=settings.monitoring.metrics_port,
        api_port=settings.monitoring.api_port,
    )

    discovery = PeriodicJob(
        "discovery",
        settings.discovery.interval_hours * 3600,
        pipeline.run_discovery_cycle,
        metrics,
    )
    execution = PeriodicJob(
        "execution",
        settings.scheduler.execution_interval_minutes * 60,
        pipeline.run_execution_cycle,
        metrics,
    )
    monitor = PeriodicJob(
        "monitor",
        settings.monitor.interval_minutes * 60,
        pipeline.run_monitor_cycle,
        metrics,
    )

    async def api_server() -> None:
        """Run the operator API server."""
        try:
            config = uvicorn.Config(
                create_app(pipeline),
                host="127.0.0.1",
                port=settings.monitoring.api_port,
                log_level="info",
            )
            server = uvicorn.Server(config)
            await server.serve()
        except Exception as exc:
            log.warning("api_server_failed", error=str(exc))

    try:
        await asyncio.gather(
            discovery.run_forever(),
            execution.run_forever(),
            monitor.run_forever(),
            api_server(),
            return_exceptions=True,
        )
    finally:
        await pipeline.market.close()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
