"""Persisted trading state: portfolio, recommendations, approvals and processed ids."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson
import structlog

from paperpilot.models import (
    CoinCandidate,
    PortfolioState,
    Recommendation,
    TradeApproval,
    format_timestamp,
    parse_timestamp,
)


class StateStore:
    """Snapshot store kept in memory and flushed to one orjson file on every write.

    ``state_path=None`` keeps everything in memory.
    """

    def __init__(self, state_path: str | Path | None, initial_cash: float = 10_000.0) -> None:
        self._file: Path | None = None
        self._log = structlog.get_logger(__name__)
        data: dict[str, Any] = {}
        if state_path is not None:
            directory = Path(state_path)
            directory.mkdir(parents=True, exist_ok=True)
            self._file = directory / "trading_state.json"
            data = self._read()
        self._portfolio = (
            PortfolioState.from_dict(data["portfolio"])
            if data.get("portfolio")
            else PortfolioState(cash=initial_cash)
        )
        self._recommendations = {
            rid: Recommendation.from_dict(rec)
            for rid, rec in (data.get("recommendations") or {}).items()
        }
        self._approvals = {
            aid: TradeApproval.from_dict(approval)
            for aid, approval in (data.get("approvals") or {}).items()
        }
        self._processed: dict[str, str] = dict(data.get("processed") or {})
        self._discovery_at = parse_timestamp(data.get("discovery_at"))
        self._candidates: list[dict[str, Any]] = list(data.get("candidates") or [])

    # Portfolio

    @property
    def portfolio(self) -> PortfolioState:
        return self._portfolio

    def save_portfolio(self, portfolio: PortfolioState | None = None) -> None:
        if portfolio is not None:
            self._portfolio = portfolio
        self._flush()

    # Recommendations

    def save_recommendation(self, recommendation: Recommendation) -> None:
        self._recommendations[recommendation.id] = recommendation
        self._flush()

    def get_recommendation(self, recommendation_id: str) -> Recommendation | None:
        return self._recommendations.get(recommendation_id)

    def list_recommendations(self, now: datetime | None = None) -> list[Recommendation]:
        items = list(self._recommendations.values())
        if now is not None:
            items = [r for r in items if not r.is_expired(now)]
        return sorted(items, key=lambda r: r.created_at)

    # Processed recommendation ids (at-most-once execution)

    def mark_processed(self, recommendation_id: str, outcome: str) -> bool:
        """Record the first outcome for a recommendation; later marks return False."""
        if recommendation_id in self._processed:
            return False
        self._processed[recommendation_id] = outcome
        self._flush()
        return True

    def update_processed(self, recommendation_id: str, outcome: str) -> None:
        self._processed[recommendation_id] = outcome
        self._flush()

    def processed_outcome(self, recommendation_id: str) -> str | None:
        return self._processed.get(recommendation_id)

    # Approvals

    def save_approval(self, approval: TradeApproval) -> None:
        self._approvals[approval.id] = approval
        self._flush()

    def get_approval(self, approval_id: str) -> TradeApproval | None:
        return self._approvals.get(approval_id)

    def list_approvals(self) -> list[TradeApproval]:
        return sorted(self._approvals.values(), key=lambda a: a.created_at)

    # Discovery cache

    def save_discovery(self, candidates: list[CoinCandidate], at: datetime) -> None:
        self._discovery_at = at
        self._candidates = [
            {**c.__dict__, "discovered_at": format_timestamp(c.discovered_at)} for c in candidates
        ]
        self._flush()

    def load_discovery(self) -> tuple[datetime | None, list[CoinCandidate]]:
        candidates = [
            CoinCandidate(**{**row, "discovered_at": parse_timestamp(row["discovered_at"])})
            for row in self._candidates
        ]
        return self._discovery_at, candidates

    def _read(self) -> dict[str, Any]:
        if self._file is None or not self._file.exists():
            return {}
        try:
            with open(self._file, "rb") as f:
                data = orjson.loads(f.read())
        except (OSError, orjson.JSONDecodeError) as exc:
            self._log.error("state_load_failed", path=str(self._file), error=str(exc))
            raise
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        if self._file is None:
            return
        payload = {
            "portfolio": self._portfolio.to_dict(),
            "recommendations": {rid: r.to_dict() for rid, r in self._recommendations.items()},
            "approvals": {aid: a.to_dict() for aid, a in self._approvals.items()},
            "processed": self._processed,
            "discovery_at": format_timestamp(self._discovery_at),
            "candidates": self._candidates,
        }
        tmp = self._file.with_suffix(".tmp")
        with open(tmp, "wb") as f:
            f.write(orjson.dumps(payload))
        os.replace(tmp, self._file)
