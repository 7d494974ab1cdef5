"""Unit tests for the provider retry boundary."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from knowledge_graph.indexer.retry import RetryPolicy, is_transient, retry_after_seconds


class HttpError(Exception):
    def __init__(self, status_code: int, headers: dict | None = None):
        super().__init__(f"HTTP {status_code}")
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


class TestClassification:
    """Which errors are worth retrying."""

    @pytest.mark.parametrize("status", [408, 409, 429, 500, 502, 503])
    def test_transient_status(self, status):
        assert is_transient(HttpError(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent_status(self, status):
        assert not is_transient(HttpError(status))

    def test_timeouts_and_connection_errors(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(ConnectionResetError())

    def test_plain_errors(self):
        assert not is_transient(ValueError("bad"))

    def test_retry_after_header(self):
        assert retry_after_seconds(HttpError(429, {"retry-after": "3"})) == 3.0
        assert retry_after_seconds(HttpError(429, {"retry-after": "soon"})) is None
        assert retry_after_seconds(ValueError()) is None


class TestRetryPolicy:
    """Backoff schedule and the run loop."""

    def test_exponential_delay_is_capped(self):
        policy = RetryPolicy(base_delay=0.5, multiplier=2.0, max_delay=3.0, jitter=0.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=1.0, jitter=0.1)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.1

    def test_retry_after_wins(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=10.0, jitter=0.0)
        assert policy.delay_for(1, HttpError(429, {"Retry-After": "4"})) == 4.0
        assert policy.delay_for(1, HttpError(429, {"Retry-After": "60"})) == 10.0

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-1)

    async def test_success_after_transient_failures(self):
        call = AsyncMock(side_effect=[HttpError(503), HttpError(429), "ok"])
        sleep = AsyncMock()
        result = await RetryPolicy(max_attempts=4, jitter=0.0).run(call, sleep=sleep)

        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    async def test_permanent_failure_returns_immediately(self):
        call = AsyncMock(side_effect=HttpError(400))
        sleep = AsyncMock()
        result = await RetryPolicy().run(call, sleep=sleep)

        assert not result.ok
        assert result.attempts == 1
        assert result.transient is False
        assert "HTTP 400" in result.error
        sleep.assert_not_awaited()

    async def test_exhausted(self):
        call = AsyncMock(side_effect=HttpError(500))
        result = await RetryPolicy(max_attempts=2, jitter=0.0).run(call, sleep=AsyncMock())
        assert not result.ok
        assert result.attempts == 2
        assert result.transient is True
        assert call.await_count == 2

    async def test_timeout_counts_as_transient(self):
        async def slow():
            await asyncio.sleep(10)

        result = await RetryPolicy(max_attempts=2, jitter=0.0).run(
            slow, timeout=0.01, sleep=AsyncMock(),
        )
        assert not result.ok
        assert result.attempts == 2
        assert "TimeoutError" in result.error

    async def test_cancellation_propagates(self):
        call = AsyncMock(side_effect=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await RetryPolicy().run(call, sleep=AsyncMock())
