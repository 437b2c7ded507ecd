"""Tests for the retry, timeout and logging decorators and the builder."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from conftest import FakeShell, fail, ok
from modelhost.config import RetrySettings
from modelhost.execution.builder import ExecutorBuilder
from modelhost.execution.decorators import LoggingExecutor, RetryExecutor, TimeoutExecutor
from modelhost.execution.base import CommandExecutor
from modelhost.models import ExecutionResult


class SlowExecutor(CommandExecutor):
    def __init__(self, delay: float):
        self.delay = delay
        self.cancelled = False

    async def execute(self, command, options=None):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ok("done")


class TestRetryExecutor:
    """Test retry behaviour driven by error classification."""

    @pytest.mark.asyncio
    async def test_success_is_not_retried(self, fast_retry_settings):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = ok("fine")

        result = await RetryExecutor(inner, fast_retry_settings).execute("true")

        assert result.success
        assert result.attempts == 1
        assert not result.retried
        assert inner.execute.call_count == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_exhausts_attempts(self, fast_retry_settings):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = fail("ssh: connect to host: Connection refused")

        result = await RetryExecutor(inner, fast_retry_settings).execute("uptime")

        assert not result.success
        assert inner.execute.call_count == 4
        assert result.attempts == 4
        assert result.retried

    @pytest.mark.asyncio
    async def test_non_retryable_failure_returns_immediately(self, fast_retry_settings):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = fail("bash: foo: command not found", exit_code=127)

        result = await RetryExecutor(inner, fast_retry_settings).execute("foo")

        assert inner.execute.call_count == 1
        assert result.attempts == 1
        assert result.exit_code == 127

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, fast_retry_settings):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.side_effect = [fail("Resource temporarily unavailable"), ok("up")]

        result = await RetryExecutor(inner, fast_retry_settings).execute("uptime")

        assert result.success
        assert result.attempts == 2
        assert result.retried

    @pytest.mark.asyncio
    async def test_backoff_delays(self, monkeypatch):
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        monkeypatch.setattr("modelhost.execution.decorators.asyncio.sleep", fake_sleep)
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = fail("operation timed out")
        settings = RetrySettings(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0)

        await RetryExecutor(inner, settings).execute("uptime")

        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = fail("Connection refused")

        result = await RetryExecutor(inner, RetrySettings(max_retries=0)).execute("uptime")

        assert inner.execute.call_count == 1
        assert result.attempts == 1


class TestTimeoutExecutor:
    """Test the overall time budget."""

    @pytest.mark.asyncio
    async def test_fast_call_passes_through(self):
        result = await TimeoutExecutor(SlowExecutor(0), timeout=1.0).execute("x")
        assert result.success
        assert result.stdout == "done"

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        inner = SlowExecutor(0.5)
        started = asyncio.get_running_loop().time()

        result = await TimeoutExecutor(inner, timeout=0.05).execute("sleep")

        elapsed = asyncio.get_running_loop().time() - started
        assert not result.success
        assert result.timed_out
        assert result.exit_code == -1
        assert elapsed < 0.4
        await asyncio.sleep(0)
        assert inner.cancelled

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            TimeoutExecutor(SlowExecutor(0), timeout=0)

    @pytest.mark.asyncio
    async def test_timeout_bounds_retries_when_outermost(self):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.return_value = fail("Connection refused")
        retry = RetryExecutor(inner, RetrySettings(max_retries=10, initial_delay=0.05, backoff_multiplier=1.0))

        result = await TimeoutExecutor(retry, timeout=0.12).execute("uptime")

        assert result.timed_out
        assert inner.execute.call_count < 11


class TestLoggingExecutor:
    """Test logging and duration stamping."""

    @pytest.mark.asyncio
    async def test_stamps_duration(self):
        result = await LoggingExecutor(SlowExecutor(0.02)).execute("x")
        assert result.success
        assert result.duration_ms >= 15

    @pytest.mark.asyncio
    async def test_logs_failure_as_warning(self, caplog):
        shell = FakeShell().on(r"^false$", fail("nope"))
        with caplog.at_level(logging.DEBUG, logger="modelhost"):
            await LoggingExecutor(shell).execute("false")

        warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
        assert warnings
        assert "nope" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_converts_exception_to_failure(self):
        inner = AsyncMock(spec=CommandExecutor)
        inner.execute.side_effect = RuntimeError("channel exploded")

        result = await LoggingExecutor(inner).execute("x")

        assert isinstance(result, ExecutionResult)
        assert not result.success
        assert "channel exploded" in result.stderr


class TestExecutorBuilder:
    """Test decorator composition order."""

    def test_innermost_first(self, shell):
        executor = ExecutorBuilder(shell).with_logging().with_retry().with_timeout(5).build()

        assert isinstance(executor, TimeoutExecutor)
        assert isinstance(executor.inner, RetryExecutor)
        assert isinstance(executor.inner.inner, LoggingExecutor)
        assert executor.inner.inner.inner is shell

    def test_retry_overrides_merge_with_settings(self, shell):
        base = RetrySettings(max_retries=7, initial_delay=0.5)
        executor = ExecutorBuilder(shell).with_retry(initial_delay=0.1, settings=base).build()

        assert executor.settings.max_retries == 7
        assert executor.settings.initial_delay == 0.1

    def test_custom_decorator_and_clear(self, shell):
        builder = ExecutorBuilder(shell).with_custom(lambda inner: TimeoutExecutor(inner, 1.0))
        assert builder.decorator_count == 1
        assert isinstance(builder.build(), TimeoutExecutor)

        builder.clear()
        assert builder.decorator_count == 0
        assert builder.build() is shell
