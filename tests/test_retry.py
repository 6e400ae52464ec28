"""Tests for the retry executor."""

import pytest

from ctxloop.errors import ContextLengthExceededError, ProcessPanicError, RetryExhaustedError
from ctxloop.retry import RetryConfig, RetryStatus, execute_with_retry, retry_operation


class Flaky:
    """Operation that raises the queued errors, then returns ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return FakeSleep()


class TestRetryConfig:
    def test_default(self):
        config = RetryConfig.default()
        assert (config.role, config.max_retries, config.autonomous) == ("agent", 3, False)

    def test_autonomous_roles(self):
        for factory, role in [(RetryConfig.planning, "planning"),
                              (RetryConfig.player, "player"),
                              (RetryConfig.coach, "coach")]:
            config = factory()
            assert config.role == role
            assert config.autonomous is True
            assert config.max_retries == 6


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, sleep):
        op = Flaky([])
        result = await execute_with_retry(op, RetryConfig.default(), sleep=sleep)
        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, sleep):
        op = Flaky([RuntimeError("502 Bad Gateway"), RuntimeError("429 rate limit")])
        result = await execute_with_retry(op, RetryConfig.default(3), sleep=sleep)
        assert result.ok
        assert op.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_context_length_never_retried(self, sleep, memory_store):
        op = Flaky([RuntimeError("context length exceeded")] * 5)
        snapshot = lambda: {"used_tokens": 195000, "total_tokens": 200000,
                            "percentage_used": 97.5, "prompt_length": 800000}

        result = await execute_with_retry(op, RetryConfig.default(5), sleep=sleep,
                                          store=memory_store, snapshot=snapshot)

        assert result.status is RetryStatus.CONTEXT_LENGTH_EXCEEDED
        assert op.calls == 1
        assert sleep.delays == []
        (entry,) = memory_store.errors
        assert entry["error_type"] == "context_length_exceeded"
        assert entry["used_tokens"] == 195000
        assert entry["prompt_length"] == 800000
        assert "timestamp" in entry

    @pytest.mark.asyncio
    async def test_non_recoverable_fails_immediately(self, sleep):
        op = Flaky([RuntimeError("401 Unauthorized")])
        result = await execute_with_retry(op, RetryConfig.default(5), sleep=sleep)
        assert result.status is RetryStatus.NON_RECOVERABLE
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_panic_stops_loop(self, sleep):
        op = Flaky([RuntimeError("backend panicked: index out of bounds")] * 3)
        result = await execute_with_retry(op, RetryConfig.default(5), sleep=sleep)
        assert result.status is RetryStatus.PANIC
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_exhaustion(self, sleep):
        op = Flaky([RuntimeError("503 Service Unavailable")] * 10)
        result = await execute_with_retry(op, RetryConfig.default(3), sleep=sleep)
        assert result.status is RetryStatus.MAX_RETRIES_REACHED
        assert result.attempts == 3
        assert op.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_backoff_grows(self, sleep):
        class Mid:
            def random(self):
                return 0.5

        op = Flaky([RuntimeError("timeout")] * 10)
        await execute_with_retry(op, RetryConfig.default(4), sleep=sleep, rng=Mid())
        assert sleep.delays == pytest.approx([1.0, 2.0, 4.0])

    @pytest.mark.asyncio
    async def test_on_retry_hook(self, sleep):
        seen = []
        op = Flaky([RuntimeError("timeout")])
        await execute_with_retry(op, RetryConfig.default(3), sleep=sleep,
                                 on_retry=lambda a, m, d, c: seen.append((a, m, c.kind.value)))
        assert seen == [(1, 3, "timeout")]


class TestRetryOperation:
    @pytest.mark.asyncio
    async def test_returns_value(self, sleep):
        assert await retry_operation(Flaky([]), RetryConfig.default(), sleep=sleep) == "ok"

    @pytest.mark.asyncio
    async def test_raises_typed_errors(self, sleep):
        with pytest.raises(ContextLengthExceededError):
            await retry_operation(Flaky([RuntimeError("prompt is too long")]),
                                  RetryConfig.default(), sleep=sleep)
        with pytest.raises(ProcessPanicError):
            await retry_operation(Flaky([RuntimeError("panic")]), RetryConfig.default(), sleep=sleep)
        with pytest.raises(RetryExhaustedError):
            await retry_operation(Flaky([RuntimeError("timeout")] * 5),
                                  RetryConfig.default(2), sleep=sleep)

    @pytest.mark.asyncio
    async def test_non_recoverable_reraised(self, sleep):
        with pytest.raises(ValueError):
            await retry_operation(Flaky([ValueError("invalid request")]),
                                  RetryConfig.default(), sleep=sleep)
