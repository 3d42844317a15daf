"""Retry with exponential backoff and jitter for transient external failures."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from paperpilot.config.settings import ExecutionConfig


T = TypeVar("T")

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.retry_attempts,
            initial_delay_ms=config.retry_initial_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            backoff_multiplier=config.retry_backoff_multiplier,
        )

    def delay_sec(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff for the given zero-based retry, jittered by a factor in [0.5, 1.5)."""
        base = min(
            self.initial_delay_ms * (self.backoff_multiplier**attempt),
            self.max_delay_ms,
        )
        jitter = 0.5 + (rng or random).random()
        return base * jitter / 1000


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS_CODES
    return False


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str,
    timeout_sec: float | None = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` until it succeeds, a non-retryable error occurs, or attempts run out."""
    attempt = 0
    while True:
        try:
            if timeout_sec is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=timeout_sec)
        except Exception as exc:
            if attempt >= policy.max_retries or not retryable(exc):
                raise
            delay = policy.delay_sec(attempt)
            log.warning(
                "retrying_after_error",
                operation=operation,
                attempt=attempt + 1,
                delay_sec=round(delay, 3),
                error=str(exc) or type(exc).__name__,
            )
            attempt += 1
            await sleep(delay)
