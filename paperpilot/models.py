"""Shared data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from uuid import uuid4

from paperpilot.errors import InvariantViolation


Action = Literal["BUY", "SELL", "HOLD"]
Urgency = Literal["high", "medium", "low"]
BuyReason = Literal["breakout", "dip", "discovery"]
SellReason = Literal["profit_target", "risk_management", "resistance"]
ApprovalStatus = Literal["pending", "approved", "rejected", "expired"]

RECOMMENDATION_TTL = timedelta(hours=24)
APPROVAL_TTL = timedelta(hours=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return uuid4().hex


def _day_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).date().isoformat()


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    name: str
    market_cap_rank: int
    price: float
    market_cap: float
    volume_24h: float
    change_24h: float
    change_7d: float


@dataclass(frozen=True)
class CoinCandidate:
    symbol: str
    name: str
    market_cap_rank: int
    market_cap: float
    price: float
    volume_24h: float
    change_24h: float
    change_7d: float
    volume_score: float
    momentum_score: float
    sentiment_score: float
    composite_score: float
    discovered_at: datetime


@dataclass(frozen=True)
class BuyOpportunity:
    symbol: str
    reason: BuyReason
    urgency: Urgency
    candidate: CoinCandidate


@dataclass(frozen=True)
class SellOpportunity:
    symbol: str
    reason: SellReason
    urgency: Urgency
    quantity: float
    entry_price: float
    current_price: float
    unrealized_pnl: float
    percent_gain: float


@dataclass(frozen=True)
class AdvisorVerdict:
    """Structured answer from one advisory provider."""

    action: Action
    confidence: float
    entry_price: float | None
    stop_loss: float | None
    take_profits: tuple[float, ...]
    position_size: float
    risk_level: str
    reasoning: str
    key_factors: tuple[str, ...]
    source: str


@dataclass(frozen=True)
class Recommendation:
    id: str
    symbol: str
    action: Literal["BUY", "SELL"]
    confidence: float
    entry_price: float
    stop_loss: float | None
    take_profit_1: float | None
    take_profit_2: float | None
    position_size: float
    risk_level: str
    reasoning: str
    key_factors: tuple[str, ...]
    source: str
    created_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.action not in ("BUY", "SELL"):
            raise InvariantViolation(f"recommendation action must be BUY or SELL, got {self.action}")
        if not 0 <= self.confidence <= 100:
            raise InvariantViolation(f"confidence out of range: {self.confidence}")
        if self.entry_price <= 0:
            raise InvariantViolation(f"entry price must be positive for {self.symbol}")
        if self.action == "BUY":
            if self.stop_loss is None:
                raise InvariantViolation(f"BUY recommendation for {self.symbol} has no stop-loss")
            if self.stop_loss >= self.entry_price:
                raise InvariantViolation(
                    f"BUY stop-loss {self.stop_loss} is not below entry {self.entry_price} for {self.symbol}"
                )

    @classmethod
    def create(
        cls,
        *,
        symbol: str,
        action: Literal["BUY", "SELL"],
        confidence: float,
        entry_price: float,
        stop_loss: float | None,
        take_profits: tuple[float, ...] = (),
        position_size: float = 0.0,
        risk_level: str = "medium",
        reasoning: str = "",
        key_factors: tuple[str, ...] = (),
        source: str = "local",
        now: datetime,
    ) -> "Recommendation":
        return cls(
            id=new_id(),
            symbol=symbol,
            action=action,
            confidence=confidence,
            entry_price=entry_price,
            stop_loss=stop_loss,
            take_profit_1=take_profits[0] if len(take_profits) > 0 else None,
            take_profit_2=take_profits[1] if len(take_profits) > 1 else None,
            position_size=position_size,
            risk_level=risk_level,
            reasoning=reasoning,
            key_factors=tuple(key_factors),
            source=source,
            created_at=now,
            expires_at=now + RECOMMENDATION_TTL,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["key_factors"] = list(self.key_factors)
        data["created_at"] = format_timestamp(self.created_at)
        data["expires_at"] = format_timestamp(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        payload = dict(data)
        payload["key_factors"] = tuple(payload.get("key_factors", ()))
        payload["created_at"] = parse_timestamp(payload["created_at"])
        payload["expires_at"] = parse_timestamp(payload["expires_at"])
        return cls(**payload)


@dataclass(frozen=True)
class TradeApproval:
    id: str
    recommendation_id: str
    symbol: str
    action: Literal["BUY", "SELL"]
    quantity: float
    entry_price: float
    stop_loss: float | None
    take_profit: float | None
    confidence: float
    status: Literal["pending", "approved", "rejected"]
    created_at: datetime
    expires_at: datetime
    resolved_at: datetime | None = None
    rejection_reason: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.status == "pending" and now >= self.expires_at

    def effective_status(self, now: datetime) -> ApprovalStatus:
        if self.is_expired(now):
            return "expired"
        return self.status

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = format_timestamp(self.created_at)
        data["expires_at"] = format_timestamp(self.expires_at)
        data["resolved_at"] = format_timestamp(self.resolved_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradeApproval":
        payload = dict(data)
        payload["created_at"] = parse_timestamp(payload["created_at"])
        payload["expires_at"] = parse_timestamp(payload["expires_at"])
        payload["resolved_at"] = parse_timestamp(payload.get("resolved_at"))
        return cls(**payload)


@dataclass
class Position:
    symbol: str
    quantity: float
    avg_entry_price: float
    stop_loss: float | None
    take_profit: float | None
    opened_at: datetime
    protection_updated_at: datetime | None = None
    partial_exits: int = 0
    highest_price: float = 0.0

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise InvariantViolation(f"negative quantity for {self.symbol}: {self.quantity}")
        if self.highest_price <= 0:
            self.highest_price = self.avg_entry_price

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.avg_entry_price) * self.quantity

    def percent_gain(self, price: float) -> float:
        if self.avg_entry_price <= 0:
            return 0.0
        return (price - self.avg_entry_price) / self.avg_entry_price * 100

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["opened_at"] = format_timestamp(self.opened_at)
        data["protection_updated_at"] = format_timestamp(self.protection_updated_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        payload = dict(data)
        payload["opened_at"] = parse_timestamp(payload["opened_at"])
        payload["protection_updated_at"] = parse_timestamp(payload.get("protection_updated_at"))
        return cls(**payload)


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One attempted state-changing action and its outcome."""

    id: str
    timestamp: datetime
    action: Literal["execute", "approve", "reject", "exit", "stop_update"]
    symbol: str
    outcome: str
    trigger: str = "auto"
    side: str | None = None
    quantity: float | None = None
    price: float | None = None
    realized_pnl: float | None = None
    recommendation_id: str | None = None
    approval_id: str | None = None
    reason: str | None = None
    duration_ms: float = 0.0
    settings: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome in ("executed", "approved", "rejected", "updated", "queued")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = format_timestamp(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionLogEntry":
        payload = dict(data)
        payload["timestamp"] = parse_timestamp(payload["timestamp"])
        return cls(**payload)


@dataclass(frozen=True)
class CircuitBreakerState:
    name: str
    state: Literal["CLOSED", "OPEN", "HALF_OPEN"]
    failure_count: int
    success_count: int
    next_retry_at: float | None


@dataclass
class PortfolioState:
    """Paper account: cash, holdings and per-day realized P&L."""

    cash: float
    positions: dict[str, Position] = field(default_factory=dict)
    realized_pnl_today: float = 0.0
    pnl_day: str | None = None
    last_trade_at: dict[str, datetime] = field(default_factory=dict)

    def total_value(self, prices: dict[str, float] | None = None) -> float:
        prices = prices or {}
        holdings = sum(
            pos.quantity * prices.get(symbol, pos.avg_entry_price)
            for symbol, pos in self.positions.items()
        )
        return self.cash + holdings

    def realized_pnl_for(self, now: datetime) -> float:
        if self.pnl_day != _day_key(now):
            return 0.0
        return self.realized_pnl_today

    def book_realized_pnl(self, pnl: float, now: datetime) -> None:
        day = _day_key(now)
        if self.pnl_day != day:
            self.pnl_day = day
            self.realized_pnl_today = 0.0
        self.realized_pnl_today += pnl

    def to_dict(self) -> dict[str, Any]:
        return {
            "cash": self.cash,
            "positions": {symbol: pos.to_dict() for symbol, pos in self.positions.items()},
            "realized_pnl_today": self.realized_pnl_today,
            "pnl_day": self.pnl_day,
            "last_trade_at": {
                symbol: format_timestamp(ts) for symbol, ts in self.last_trade_at.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortfolioState":
        return cls(
            cash=float(data.get("cash", 0.0)),
            positions={
                symbol: Position.from_dict(pos)
                for symbol, pos in (data.get("positions") or {}).items()
            },
            realized_pnl_today=float(data.get("realized_pnl_today", 0.0)),
            pnl_day=data.get("pnl_day"),
            last_trade_at={
                symbol: parse_timestamp(ts)
                for symbol, ts in (data.get("last_trade_at") or {}).items()
                if ts
            },
        )
