"""Operator API: opportunities, approvals, stats and trading switches."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from paperpilot.errors import PaperPilotError, SettingsUnavailable
from paperpilot.execution.executor import ExecutionResult
from paperpilot.models import CoinCandidate, format_timestamp
from paperpilot.pipeline import TradingPipeline

# Refusals by policy versus failures the caller may retry.
RISK_STATUSES = {"risk_denied", "discarded"}
SYSTEM_STATUSES = {"system_error", "circuit_open"}


def _candidate_dict(candidate: CoinCandidate) -> dict[str, Any]:
    return {**candidate.__dict__, "discovered_at": format_timestamp(candidate.discovered_at)}


def _serialize_result(result: ExecutionResult) -> dict[str, Any]:
    data = result.to_dict()
    if result.status in RISK_STATUSES:
        data["error_type"] = "risk_denied"
    elif result.status in SYSTEM_STATUSES:
        data["error_type"] = "system_error"
    else:
        data["error_type"] = None
    data["retryable"] = result.status in SYSTEM_STATUSES
    return data


def create_app(pipeline: TradingPipeline) -> FastAPI:
    """Create and configure the FastAPI application."""
    started = {"at": 0.0}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        started["at"] = time.time()
        yield

    app = FastAPI(
        title="PaperPilot Operator API",
        description="Inspect the paper-trading loop and resolve pending approvals",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(SettingsUnavailable)
    async def settings_unavailable(request: Request, exc: SettingsUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"status": "system_error", "error_type": "system_error", "reason": str(exc), "retryable": True},
        )

    @app.exception_handler(PaperPilotError)
    async def paperpilot_error(request: Request, exc: PaperPilotError) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"status": "system_error", "error_type": "system_error", "reason": str(exc), "retryable": False},
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        uptime = time.time() - started["at"] if started["at"] else 0.0
        breakers = pipeline.breaker_states()
        return {
            "status": "healthy",
            "uptime_sec": uptime,
            "open_positions": len(pipeline.store.portfolio.positions),
            "open_breakers": [b["name"] for b in breakers if b["state"] != "CLOSED"],
        }

    @app.get("/opportunities")
    async def opportunities(force_refresh: bool = Query(default=False)) -> dict[str, Any]:
        scan = await pipeline.find_opportunities(force_refresh=force_refresh)
        summary = scan.summary
        return {
            "scanned_at": format_timestamp(scan.scanned_at),
            "cached": scan.cached,
            "buy_opportunities": [
                {
                    "symbol": o.symbol,
                    "reason": o.reason,
                    "urgency": o.urgency,
                    "candidate": _candidate_dict(o.candidate),
                }
                for o in scan.buy_opportunities
            ],
            "sell_opportunities": [o.__dict__ for o in scan.sell_opportunities],
            "candidates": [_candidate_dict(c) for c in scan.candidates],
            "summary": (
                {
                    "total_analyzed": summary.total_analyzed,
                    "passed": summary.passed,
                    "rejected": summary.rejected,
                    "top_rejection_reasons": [
                        {"reason": reason, "count": count} for reason, count in summary.top_rejection_reasons
                    ],
                }
                if summary
                else None
            ),
        }

    @app.post("/recommendations/generate")
    async def generate(
        max_buy: int = Query(default=3, ge=0, le=10),
        max_sell: int = Query(default=3, ge=0, le=10),
    ) -> dict[str, Any]:
        batch = await pipeline.generate_recommendations(max_buy=max_buy, max_sell=max_sell)
        return batch.to_dict()

    @app.get("/approvals")
    async def pending_approvals() -> dict[str, Any]:
        pending = pipeline.list_pending_approvals()
        return {"count": len(pending), "approvals": [a.to_dict() for a in pending]}

    @app.post("/approvals/{approval_id}/approve")
    async def approve(approval_id: str) -> JSONResponse:
        result = await pipeline.approve(approval_id)
        status_code = 404 if result.status == "not_found" else 200
        return JSONResponse(status_code=status_code, content=_serialize_result(result))

    @app.post("/approvals/{approval_id}/reject")
    async def reject(approval_id: str, reason: str = Query(default="rejected by operator")) -> JSONResponse:
        resolution = await pipeline.reject(approval_id, reason)
        status_code = 404 if resolution.status == "not_found" else 200
        return JSONResponse(
            status_code=status_code,
            content={
                "status": resolution.status,
                "approval_id": approval_id,
                "reason": resolution.reason,
            },
        )

    @app.get("/stats/execution")
    async def execution_stats() -> dict[str, Any]:
        return pipeline.get_execution_stats()

    @app.get("/stats/monitoring")
    async def monitoring_stats() -> dict[str, Any]:
        return pipeline.get_monitoring_stats()

    @app.get("/breakers")
    async def breakers() -> dict[str, Any]:
        return {"breakers": pipeline.breaker_states()}

    @app.get("/settings")
    async def get_settings() -> dict[str, Any]:
        return pipeline.settings_store.load().to_dict()

    @app.put("/settings")
    async def put_settings(changes: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return pipeline.settings_store.update(changes).to_dict()

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "name": "PaperPilot Operator API",
            "version": "0.1.0",
            "endpoints": {
                "health": "GET /health",
                "opportunities": "GET /opportunities?force_refresh=<bool>",
                "generate": "POST /recommendations/generate?max_buy=<int>&max_sell=<int>",
                "approvals": "GET /approvals",
                "approve": "POST /approvals/{id}/approve",
                "reject": "POST /approvals/{id}/reject?reason=<text>",
                "execution_stats": "GET /stats/execution",
                "monitoring_stats": "GET /stats/monitoring",
                "breakers": "GET /breakers",
                "settings": "GET|PUT /settings",
            },
        }

    return app
