import asyncio
import random

import httpx
import pytest

from paperpilot.utils.retry import RetryPolicy, is_retryable, retry_async


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError("status", request=request, response=response)


def test_delay_grows_and_is_capped() -> None:
    policy = RetryPolicy(max_retries=5, initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=2.0)

    class _Mid(random.Random):
        def random(self) -> float:
            return 0.5

    rng = _Mid()
    assert policy.delay_sec(0, rng) == pytest.approx(1.0)
    assert policy.delay_sec(1, rng) == pytest.approx(2.0)
    assert policy.delay_sec(2, rng) == pytest.approx(4.0)
    assert policy.delay_sec(5, rng) == pytest.approx(5.0)


def test_jitter_stays_within_band() -> None:
    policy = RetryPolicy(initial_delay_ms=1000)
    rng = random.Random(7)
    for _ in range(50):
        assert 0.5 <= policy.delay_sec(0, rng) < 1.5


def test_retryable_classification() -> None:
    assert is_retryable(asyncio.TimeoutError())
    assert is_retryable(httpx.ConnectError("refused"))
    assert is_retryable(_status_error(429))
    assert is_retryable(_status_error(503))
    assert not is_retryable(_status_error(400))
    assert not is_retryable(ValueError("bad payload"))


def test_retries_transient_errors_then_succeeds() -> None:
    attempts = []
    sleeps = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise _status_error(503)
        return "ok"

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    result = asyncio.run(
        retry_async(flaky, RetryPolicy(max_retries=3), operation="test", sleep=fake_sleep)
    )
    assert result == "ok"
    assert len(attempts) == 3
    assert len(sleeps) == 2


def test_non_retryable_error_is_raised_immediately() -> None:
    attempts = []

    async def broken():
        attempts.append(1)
        raise ValueError("schema")

    async def fake_sleep(delay: float) -> None:
        raise AssertionError("should not sleep")

    with pytest.raises(ValueError):
        asyncio.run(retry_async(broken, RetryPolicy(max_retries=3), operation="test", sleep=fake_sleep))
    assert len(attempts) == 1


def test_gives_up_after_max_retries() -> None:
    attempts = []

    async def down():
        attempts.append(1)
        raise _status_error(502)

    async def fake_sleep(delay: float) -> None:
        return None

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(retry_async(down, RetryPolicy(max_retries=2), operation="test", sleep=fake_sleep))
    assert len(attempts) == 3
