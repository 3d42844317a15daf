"""Discovery scoring: volume, momentum and sentiment blended into one composite."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

import structlog

from paperpilot.models import CoinCandidate, MarketSnapshot


DiscoveryProfileName = Literal["conservative", "moderate", "aggressive", "debug"]

VOLUME_WEIGHT = 0.40
MOMENTUM_WEIGHT = 0.35
SENTIMENT_WEIGHT = 0.25

NEUTRAL_SENTIMENT = 50.0


def _clamp(value: float, min_val: float, max_val: float) -> float:
    return max(min_val, min(max_val, value))


@dataclass(frozen=True)
class DiscoveryProfile:
    """Filter thresholds applied before and after scoring."""

    name: str
    min_market_cap: float
    min_volume_24h: float
    min_composite: float
    max_market_cap: float | None = None


DISCOVERY_PROFILES: dict[str, DiscoveryProfile] = {
    "conservative": DiscoveryProfile("conservative", 100_000_000, 10_000_000, 65.0),
    "moderate": DiscoveryProfile("moderate", 10_000_000, 1_000_000, 60.0),
    "aggressive": DiscoveryProfile("aggressive", 5_000_000, 500_000, 50.0),
    "debug": DiscoveryProfile("debug", 0.0, 0.0, 0.0),
}


def get_profile(name: str) -> DiscoveryProfile:
    try:
        return DISCOVERY_PROFILES[name]
    except KeyError as exc:
        raise ValueError(f"Unknown discovery profile: {name}") from exc


class VolumeFactor:
    """Turnover: 24h volume relative to market cap; 30% turnover scores 100."""

    FULL_SCORE_RATIO = 0.3

    def compute(self, volume_24h: float, market_cap: float) -> float:
        if market_cap <= 0:
            return 0.0
        ratio = volume_24h / market_cap
        return _clamp(ratio / self.FULL_SCORE_RATIO * 100, 0.0, 100.0)


class MomentumFactor:
    """Blend of 24h and 7d change; -10% maps to 0 and +10% maps to 100."""

    def compute(self, change_24h: float, change_7d: float) -> float:
        momentum = 0.6 * change_24h + 0.4 * change_7d
        return _clamp((momentum + 10) / 20 * 100, 0.0, 100.0)


class SentimentFactor:
    def compute(self, sentiment: float | None) -> float:
        if sentiment is None:
            return NEUTRAL_SENTIMENT
        return _clamp(sentiment, 0.0, 100.0)


def sentiment_to_score(raw: float | None) -> float:
    """Map provider sentiment in [-1, 1] onto [0, 100]; missing means neutral."""
    if raw is None:
        return NEUTRAL_SENTIMENT
    return _clamp((_clamp(raw, -1.0, 1.0) + 1) / 2 * 100, 0.0, 100.0)


def composite_score(volume_score: float, momentum_score: float, sentiment_score: float) -> float:
    return (
        VOLUME_WEIGHT * volume_score
        + MOMENTUM_WEIGHT * momentum_score
        + SENTIMENT_WEIGHT * sentiment_score
    )


@dataclass(frozen=True)
class CoinAnalysis:
    symbol: str
    name: str
    rank: int
    timestamp: datetime
    passed: bool
    reason: str
    composite_score: float | None = None
    details: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class DiscoverySummary:
    total_analyzed: int
    passed: int
    rejected: int
    top_rejection_reasons: list[tuple[str, int]]


@dataclass(frozen=True)
class DiscoveryResult:
    candidates: list[CoinCandidate]
    analysis_log: list[CoinAnalysis]
    summary: DiscoverySummary


class Scorer:
    """Score market snapshots and keep those clearing the profile's bar."""

    def __init__(self) -> None:
        self.volume = VolumeFactor()
        self.momentum = MomentumFactor()
        self.sentiment = SentimentFactor()
        self._log = structlog.get_logger(__name__)

    def score(self, snapshot: MarketSnapshot, sentiment_score: float | None, now: datetime) -> CoinCandidate:
        volume_score = self.volume.compute(snapshot.volume_24h, snapshot.market_cap)
        momentum_score = self.momentum.compute(snapshot.change_24h, snapshot.change_7d)
        sentiment = self.sentiment.compute(sentiment_score)
        return CoinCandidate(
            symbol=snapshot.symbol,
            name=snapshot.name,
            market_cap_rank=snapshot.market_cap_rank,
            market_cap=snapshot.market_cap,
            price=snapshot.price,
            volume_24h=snapshot.volume_24h,
            change_24h=snapshot.change_24h,
            change_7d=snapshot.change_7d,
            volume_score=volume_score,
            momentum_score=momentum_score,
            sentiment_score=sentiment,
            composite_score=composite_score(volume_score, momentum_score, sentiment),
            discovered_at=now,
        )

    def discover(
        self,
        snapshots: list[MarketSnapshot],
        sentiment_scores: dict[str, float],
        profile: DiscoveryProfile,
        now: datetime,
    ) -> DiscoveryResult:
        """Filter, score and rank a batch of snapshots.

        ``sentiment_scores`` holds values already on the 0-100 scale; symbols
        without an entry are scored as neutral.
        """
        candidates: list[CoinCandidate] = []
        analysis: list[CoinAnalysis] = []
        rejections: Counter[str] = Counter()

        for snapshot in snapshots:
            details = {
                "market_cap": snapshot.market_cap,
                "volume_24h": snapshot.volume_24h,
                "change_24h": snapshot.change_24h,
                "change_7d": snapshot.change_7d,
            }
            reject = self._prefilter(snapshot, profile)
            if reject:
                rejections[reject] += 1
                analysis.append(
                    CoinAnalysis(
                        symbol=snapshot.symbol,
                        name=snapshot.name,
                        rank=snapshot.market_cap_rank,
                        timestamp=now,
                        passed=False,
                        reason=reject,
                        details=details,
                    )
                )
                continue

            candidate = self.score(snapshot, sentiment_scores.get(snapshot.symbol), now)
            details |= {
                "volume_score": candidate.volume_score,
                "momentum_score": candidate.momentum_score,
                "sentiment_score": candidate.sentiment_score,
            }
            if candidate.composite_score >= profile.min_composite:
                candidates.append(candidate)
                reason = f"Passed screening (score: {candidate.composite_score:.0f})"
                passed = True
            else:
                weak = []
                if candidate.volume_score < 30:
                    weak.append("weak volume")
                if candidate.momentum_score < 30:
                    weak.append("poor momentum")
                if candidate.sentiment_score < 40:
                    weak.append("negative sentiment")
                reason = f"Composite score too low ({candidate.composite_score:.0f}/100)"
                if weak:
                    reason += ": " + ", ".join(weak)
                rejections["Low composite score"] += 1
                passed = False
            analysis.append(
                CoinAnalysis(
                    symbol=snapshot.symbol,
                    name=snapshot.name,
                    rank=snapshot.market_cap_rank,
                    timestamp=now,
                    passed=passed,
                    reason=reason,
                    composite_score=candidate.composite_score,
                    details=details,
                )
            )

        candidates.sort(key=lambda c: (-c.composite_score, c.market_cap_rank))
        summary = DiscoverySummary(
            total_analyzed=len(snapshots),
            passed=len(candidates),
            rejected=sum(rejections.values()),
            top_rejection_reasons=rejections.most_common(5),
        )
        self._log.info(
            "discovery_scored",
            profile=profile.name,
            analyzed=summary.total_analyzed,
            passed=summary.passed,
            rejected=summary.rejected,
        )
        return DiscoveryResult(candidates=candidates, analysis_log=analysis, summary=summary)

    @staticmethod
    def _prefilter(snapshot: MarketSnapshot, profile: DiscoveryProfile) -> str | None:
        if snapshot.market_cap < profile.min_market_cap:
            return (
                f"Market cap too low (${snapshot.market_cap / 1e6:.1f}M < "
                f"${profile.min_market_cap / 1e6:.0f}M minimum)"
            )
        if profile.max_market_cap is not None and snapshot.market_cap > profile.max_market_cap:
            return (
                f"Market cap too high (${snapshot.market_cap / 1e9:.1f}B > "
                f"${profile.max_market_cap / 1e9:.1f}B maximum)"
            )
        if snapshot.volume_24h < profile.min_volume_24h:
            return (
                f"Volume too low (${snapshot.volume_24h / 1e6:.1f}M < "
                f"${profile.min_volume_24h / 1e6:.0f}M minimum)"
            )
        return None
