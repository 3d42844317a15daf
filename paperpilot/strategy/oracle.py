"""Decision oracle: provider dispatch, consensus and fallback to local rules."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Literal

import structlog

from paperpilot.connectors.advisors import LocalAdvisor
from paperpilot.connectors.base import Advisor
from paperpilot.config.store import TradingSettings
from paperpilot.errors import AdvisoryUnavailable
from paperpilot.models import AdvisorVerdict, Recommendation
from paperpilot.monitoring.metrics import Metrics
from paperpilot.risk.circuit_breaker import CircuitBreaker


DISAGREEMENT_CONFIDENCE = 50.0


def combine_verdicts(first: AdvisorVerdict, second: AdvisorVerdict) -> AdvisorVerdict:
    """Agreement keeps the more confident verdict; disagreement becomes HOLD at 50."""
    if first.action == second.action:
        return first if first.confidence >= second.confidence else second
    return AdvisorVerdict(
        action="HOLD",
        confidence=DISAGREEMENT_CONFIDENCE,
        entry_price=None,
        stop_loss=None,
        take_profits=(),
        position_size=0.0,
        risk_level="MEDIUM",
        reasoning=(
            f"Advisors disagree: {first.source} says {first.action} "
            f"({first.confidence:.0f}%): {first.reasoning} | "
            f"{second.source} says {second.action} ({second.confidence:.0f}%): "
            f"{second.reasoning}. Holding until consensus emerges."
        ),
        key_factors=first.key_factors + second.key_factors,
        source="consensus",
    )


class DecisionOracle:
    """Select advisory providers per call and resolve their answers into one verdict."""

    def __init__(
        self,
        advisors: dict[str, Advisor],
        local: LocalAdvisor | None = None,
        breaker: CircuitBreaker | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.advisors = advisors
        self.local = local or LocalAdvisor()
        self.breaker = breaker
        self.metrics = metrics
        self._log = structlog.get_logger(__name__)

    async def advise(self, payload: dict[str, Any], mode: str, profile: str) -> AdvisorVerdict:
        """Consult the configured providers, falling back to local rules if all fail."""
        try:
            return await self.consult(payload, mode, profile)
        except AdvisoryUnavailable as exc:
            self._log.warning(
                "advisory_fallback_local",
                symbol=payload.get("symbol"),
                mode=mode,
                error=str(exc),
            )
            if self.metrics:
                self.metrics.advisory_fallback_total.inc()
            return self.local.evaluate(payload)

    async def consult(self, payload: dict[str, Any], mode: str, profile: str) -> AdvisorVerdict:
        if mode == "local":
            return self.local.evaluate(payload)
        if mode == "consensus":
            return await self._consensus(payload, profile)
        return await self._single(mode, payload, profile)

    async def _single(self, name: str, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        advisor = self.advisors.get(name)
        if advisor is None:
            raise AdvisoryUnavailable(f"advisor '{name}' is not configured")
        try:
            return await self._call(advisor, payload, profile)
        except Exception as exc:
            raise AdvisoryUnavailable(f"{name} failed: {exc}") from exc

    async def _consensus(self, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        names = [name for name in ("openai", "anthropic") if name in self.advisors]
        if not names:
            raise AdvisoryUnavailable("no advisory providers configured for consensus")
        results = await asyncio.gather(
            *(self._call(self.advisors[name], payload, profile) for name in names),
            return_exceptions=True,
        )
        verdicts: list[AdvisorVerdict] = []
        errors: list[str] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self._log.warning(
                    "advisor_failed",
                    advisor=name,
                    symbol=payload.get("symbol"),
                    error=str(result) or type(result).__name__,
                )
                errors.append(f"{name}: {result}")
            else:
                verdicts.append(result)
        if not verdicts:
            raise AdvisoryUnavailable("; ".join(errors))
        if len(verdicts) == 1:
            return verdicts[0]
        combined = combine_verdicts(verdicts[0], verdicts[1])
        if combined.action == "HOLD" and verdicts[0].action != verdicts[1].action:
            self._log.warning(
                "advisors_disagree",
                symbol=payload.get("symbol"),
                first=verdicts[0].action,
                second=verdicts[1].action,
            )
        return combined

    async def _call(self, advisor: Advisor, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        if self.breaker is None:
            return await advisor.recommend(payload, profile)
        return await self.breaker.call(lambda: advisor.recommend(payload, profile))


def build_recommendation(
    verdict: AdvisorVerdict,
    symbol: str,
    side: Literal["BUY", "SELL"],
    current_price: float,
    settings: TradingSettings,
    now: datetime,
    default_stop_pct: float = 5.0,
) -> Recommendation | None:
    """Turn a verdict into a stored recommendation, or ``None`` when it must be discarded.

    HOLD verdicts and verdicts pointing the other way from the opportunity are
    dropped. SELL recommendations are priced at the current price. A BUY without
    a usable stop-loss gets the default stop when ``auto_stop_loss`` is on and is
    dropped otherwise.
    """
    log = structlog.get_logger(__name__)
    if verdict.action == "HOLD":
        return None
    if verdict.action != side:
        log.info(
            "verdict_side_mismatch",
            symbol=symbol,
            opportunity=side,
            verdict=verdict.action,
        )
        return None
    if current_price <= 0:
        return None

    if verdict.action == "SELL":
        return Recommendation.create(
            symbol=symbol,
            action="SELL",
            confidence=verdict.confidence,
            entry_price=current_price,
            stop_loss=verdict.stop_loss,
            take_profits=(),
            position_size=verdict.position_size,
            risk_level=verdict.risk_level,
            reasoning=verdict.reasoning,
            key_factors=verdict.key_factors,
            source=verdict.source,
            now=now,
        )

    entry = verdict.entry_price if verdict.entry_price and verdict.entry_price > 0 else current_price
    stop = verdict.stop_loss
    if stop is None or stop <= 0 or stop >= entry:
        if not settings.auto_stop_loss:
            log.warning("buy_verdict_without_stop", symbol=symbol, stop_loss=stop, entry=entry)
            return None
        stop = entry * (1 - default_stop_pct / 100)
    targets = tuple(t for t in verdict.take_profits if t > entry)
    return Recommendation.create(
        symbol=symbol,
        action="BUY",
        confidence=verdict.confidence,
        entry_price=entry,
        stop_loss=stop,
        take_profits=targets,
        position_size=verdict.position_size,
        risk_level=verdict.risk_level,
        reasoning=verdict.reasoning,
        key_factors=verdict.key_factors,
        source=verdict.source,
        now=now,
    )
