"""Resilience decorators around a command executor.

Each decorator wraps another ``CommandExecutor`` and is itself one, so they
compose in any order. For a bounded overall time budget the timeout has to
wrap the retry, not the other way round.
"""

import asyncio
import logging
import time
from typing import Optional

from ..config import RetrySettings, TimeoutSettings
from ..errors.classifier import ErrorClassifier
from ..models import ExecutionOptions, ExecutionResult
from .base import CommandExecutor

logger = logging.getLogger(__name__)


class ExecutorDecorator(CommandExecutor):
    """Base for decorators holding a wrapped executor."""

    def __init__(self, inner: CommandExecutor):
        self.inner = inner

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.inner!r})"


class RetryExecutor(ExecutorDecorator):
    """Re-runs a command while it fails with a retryable error."""

    def __init__(self, inner: CommandExecutor, settings: Optional[RetrySettings] = None,
                 classifier: Optional[ErrorClassifier] = None):
        super().__init__(inner)
        self.settings = settings or RetrySettings()
        self.classifier = classifier or ErrorClassifier()

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        max_attempts = self.settings.max_retries + 1
        delay = self.settings.initial_delay

        attempt = 0
        while True:
            result = await self.inner.execute(command, options)

            final = attempt == max_attempts - 1
            if result.success or final or not self.classifier.is_retryable(result):
                if attempt > 0:
                    result = result.model_copy(update={"attempts": attempt + 1, "retried": True})
                    if not result.success:
                        logger.error(f"Command failed after {attempt + 1} attempts: {command}")
                return result

            logger.warning(
                f"Retryable failure ({self.classifier.classify(result).value}), retrying in {delay}s "
                f"(attempt {attempt + 1}/{max_attempts}): {command}"
            )
            await asyncio.sleep(delay)
            delay *= self.settings.backoff_multiplier
            attempt += 1


def _consume_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned command raised after timeout: {exc}")


class TimeoutExecutor(ExecutorDecorator):
    """Races the wrapped call against a timer."""

    def __init__(self, inner: CommandExecutor, timeout: Optional[float] = None):
        super().__init__(inner)
        self.timeout = timeout if timeout is not None else TimeoutSettings().timeout
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        started = time.monotonic()
        task = asyncio.ensure_future(self.inner.execute(command, options))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        # The loser is cancelled and its outcome swallowed so it never resurfaces
        task.cancel()
        task.add_done_callback(_consume_outcome)
        logger.warning(f"Command timed out after {self.timeout}s: {command}")
        message = f"Command timed out after {self.timeout}s"
        return ExecutionResult(
            success=False,
            exit_code=-1,
            stderr=message,
            error=message,
            timed_out=True,
            duration_ms=(time.monotonic() - started) * 1000,
        )


class LoggingExecutor(ExecutorDecorator):
    """Logs start, outcome and duration of each call and stamps ``duration_ms``."""

    def __init__(self, inner: CommandExecutor, log: Optional[logging.Logger] = None,
                 log_command: bool = True, log_result: bool = True, log_error: bool = True):
        super().__init__(inner)
        self.log = log or logger
        self.log_command = log_command
        self.log_result = log_result
        self.log_error = log_error

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        started = time.monotonic()
        if self.log_command:
            self.log.debug(f"Executing command: {command}")

        try:
            result = await self.inner.execute(command, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error(f"Command raised {type(e).__name__}: {e}")
            result = ExecutionResult.failure(str(e) or type(e).__name__)

        duration_ms = (time.monotonic() - started) * 1000
        result = result.model_copy(update={"duration_ms": duration_ms})

        if result.success:
            if self.log_result:
                self.log.debug(f"Command succeeded in {duration_ms:.0f}ms: {command}")
        elif self.log_error:
            detail = (result.stderr or result.error or "").strip()
            self.log.warning(
                f"Command failed in {duration_ms:.0f}ms (exit {result.exit_code}): {command}"
                + (f" - {detail[:500]}" if detail else "")
            )
        return result
