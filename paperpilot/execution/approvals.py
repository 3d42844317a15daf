"""Time-boxed approval mailbox for trades awaiting a human decision."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Literal

import structlog

from paperpilot.errors import InvalidTransition
from paperpilot.ledger.execution_log import ExecutionLedger
from paperpilot.ledger.locks import KeyedLocks
from paperpilot.ledger.store import StateStore
from paperpilot.models import (
    APPROVAL_TTL,
    ExecutionLogEntry,
    Recommendation,
    TradeApproval,
    new_id,
)


ResolutionStatus = Literal["approved", "rejected", "expired", "not_found", "invalid_state"]


@dataclass(frozen=True)
class ApprovalResolution:
    status: ResolutionStatus
    approval: TradeApproval | None
    reason: str = ""


def transition(
    approval: TradeApproval,
    status: Literal["approved", "rejected"],
    now: datetime,
    reason: str | None = None,
) -> TradeApproval:
    """The single forward transition out of ``pending``."""
    if approval.status != "pending":
        raise InvalidTransition(f"approval {approval.id} is already {approval.status}")
    if approval.is_expired(now):
        raise InvalidTransition(f"approval {approval.id} expired at {approval.expires_at.isoformat()}")
    return replace(approval, status=status, resolved_at=now, rejection_reason=reason)


class ApprovalQueue:
    """Pending trades keyed by approval id.

    Expiry is evaluated at read time against ``expires_at``; there is no sweep.
    Resolution of one approval is serialized on its id.
    """

    def __init__(
        self,
        store: StateStore,
        ledger: ExecutionLedger,
        locks: KeyedLocks,
        ttl: timedelta = APPROVAL_TTL,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self.ttl = ttl
        self._log = structlog.get_logger(__name__)

    def create(self, recommendation: Recommendation, quantity: float, now: datetime) -> TradeApproval:
        approval = TradeApproval(
            id=new_id(),
            recommendation_id=recommendation.id,
            symbol=recommendation.symbol,
            action=recommendation.action,
            quantity=quantity,
            entry_price=recommendation.entry_price,
            stop_loss=recommendation.stop_loss,
            take_profit=recommendation.take_profit_1,
            confidence=recommendation.confidence,
            status="pending",
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.save_approval(approval)
        self._log.info(
            "approval_created",
            approval_id=approval.id,
            symbol=approval.symbol,
            action=approval.action,
            quantity=quantity,
            expires_at=approval.expires_at.isoformat(),
        )
        return approval

    def get(self, approval_id: str) -> TradeApproval | None:
        return self.store.get_approval(approval_id)

    def list_pending(self, now: datetime) -> list[TradeApproval]:
        return [
            a for a in self.store.list_approvals() if a.status == "pending" and a.expires_at > now
        ]

    async def approve(self, approval_id: str, now: datetime) -> ApprovalResolution:
        return await self._resolve(approval_id, "approved", now, None)

    async def reject(self, approval_id: str, reason: str, now: datetime) -> ApprovalResolution:
        return await self._resolve(approval_id, "rejected", now, reason or "rejected by operator")

    async def _resolve(
        self,
        approval_id: str,
        status: Literal["approved", "rejected"],
        now: datetime,
        reason: str | None,
    ) -> ApprovalResolution:
        async with self.locks.hold(f"approval:{approval_id}"):
            approval = self.store.get_approval(approval_id)
            if approval is None:
                return ApprovalResolution("not_found", None, f"approval {approval_id} not found")
            if approval.is_expired(now):
                self._log.warning("approval_expired", approval_id=approval_id, symbol=approval.symbol)
                self._record(approval, "approve" if status == "approved" else "reject", "expired", now)
                return ApprovalResolution("expired", approval, "approval has expired")
            try:
                resolved = transition(approval, status, now, reason)
            except InvalidTransition as exc:
                return ApprovalResolution("invalid_state", approval, str(exc))
            self.store.save_approval(resolved)
            self._record(resolved, "approve" if status == "approved" else "reject", status, now, reason)
            self._log.info(
                "approval_resolved",
                approval_id=approval_id,
                symbol=resolved.symbol,
                status=status,
                reason=reason,
            )
            return ApprovalResolution(status, resolved, reason or "")

    def _record(
        self,
        approval: TradeApproval,
        action: Literal["approve", "reject"],
        outcome: str,
        now: datetime,
        reason: str | None = None,
    ) -> None:
        self.ledger.append(
            ExecutionLogEntry(
                id=new_id(),
                timestamp=now,
                action=action,
                symbol=approval.symbol,
                outcome=outcome,
                trigger="manual",
                side=approval.action,
                quantity=approval.quantity,
                price=approval.entry_price,
                recommendation_id=approval.recommendation_id,
                approval_id=approval.id,
                reason=reason,
            )
        )
