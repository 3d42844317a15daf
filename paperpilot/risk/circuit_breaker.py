"""Circuit breakers guarding state-changing and external actions."""

from __future__ import annotations

import threading
import time
from typing import Awaitable, Callable, Literal, TypeVar

import structlog

from paperpilot.config.settings import BreakerConfig, BreakersConfig
from paperpilot.errors import CircuitOpenError
from paperpilot.models import CircuitBreakerState


T = TypeVar("T")
BreakerStateName = Literal["CLOSED", "OPEN", "HALF_OPEN"]


class CircuitBreaker:
    """CLOSED -> OPEN after ``threshold`` consecutive failures; probes after ``cooldown_sec``.

    Error types are not distinguished. Counters are shared by every caller of the
    instance and updated under a lock.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        cooldown_sec: float = 60.0,
        reset_count: int = 2,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, str], None] | None = None,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.cooldown_sec = cooldown_sec
        self.reset_count = reset_count
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state: BreakerStateName = "CLOSED"
        self._failures = 0
        self._successes = 0
        self._next_retry_at: float | None = None
        self._log = structlog.get_logger(__name__)

    @classmethod
    def from_config(cls, name: str, config: BreakerConfig, **kwargs) -> "CircuitBreaker":  # type: ignore[no-untyped-def]
        return cls(
            name,
            threshold=config.threshold,
            cooldown_sec=config.cooldown_sec,
            reset_count=config.reset_count,
            **kwargs,
        )

    @property
    def state(self) -> BreakerStateName:
        with self._lock:
            return self._state

    def allow(self) -> bool:
        """Return whether a call may proceed, moving OPEN -> HALF_OPEN once the cooldown passed."""
        with self._lock:
            if self._state != "OPEN":
                return True
            if self._next_retry_at is not None and self._clock() >= self._next_retry_at:
                self._transition("HALF_OPEN")
                self._successes = 0
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == "HALF_OPEN":
                self._successes += 1
                if self._successes >= self.reset_count:
                    self._transition("CLOSED")
                    self._failures = 0
                    self._successes = 0
                    self._next_retry_at = None
                return
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state == "HALF_OPEN":
                self._open()
                return
            self._failures += 1
            if self._state == "CLOSED" and self._failures >= self.threshold:
                self._open()

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        if not self.allow():
            raise CircuitOpenError(self.name, self._next_retry_at)
        try:
            result = await func()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                failure_count=self._failures,
                success_count=self._successes,
                next_retry_at=self._next_retry_at,
            )

    def _open(self) -> None:
        self._transition("OPEN")
        self._successes = 0
        self._next_retry_at = self._clock() + self.cooldown_sec

    def _transition(self, new_state: BreakerStateName) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return
        self._log.warning(
            "circuit_breaker_transition",
            breaker=self.name,
            from_state=old_state,
            to_state=new_state,
            failures=self._failures,
        )
        if self._on_state_change:
            self._on_state_change(self.name, new_state)


class BreakerRegistry:
    """One breaker per protected action class."""

    EXECUTION = "execution"
    MARKET_DATA = "market-data"
    ADVISORY = "advisory"

    def __init__(
        self,
        config: BreakersConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, str], None] | None = None,
    ) -> None:
        config = config or BreakersConfig()
        self._breakers = {
            self.EXECUTION: CircuitBreaker.from_config(
                self.EXECUTION, config.execution, clock=clock, on_state_change=on_state_change
            ),
            self.MARKET_DATA: CircuitBreaker.from_config(
                self.MARKET_DATA, config.market_data, clock=clock, on_state_change=on_state_change
            ),
            self.ADVISORY: CircuitBreaker.from_config(
                self.ADVISORY, config.advisory, clock=clock, on_state_change=on_state_change
            ),
        }

    def get(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    @property
    def execution(self) -> CircuitBreaker:
        return self._breakers[self.EXECUTION]

    @property
    def market_data(self) -> CircuitBreaker:
        return self._breakers[self.MARKET_DATA]

    @property
    def advisory(self) -> CircuitBreaker:
        return self._breakers[self.ADVISORY]

    def snapshots(self) -> list[CircuitBreakerState]:
        return [breaker.snapshot() for breaker in self._breakers.values()]
