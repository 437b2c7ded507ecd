"""Builder composing resilience decorators around a base executor."""

import logging
from typing import Callable, List, Optional

from ..config import RetrySettings
from ..errors.classifier import ErrorClassifier
from .base import CommandExecutor
from .decorators import LoggingExecutor, RetryExecutor, TimeoutExecutor

DecoratorFactory = Callable[[CommandExecutor], CommandExecutor]


class ExecutorBuilder:
    """Wraps a base executor innermost-first.

    The first decorator added sits directly around the base executor and
    each later one wraps the result so far, so::

        ExecutorBuilder(target).with_logging().with_retry().with_timeout().build()

    yields ``Timeout(Retry(Logging(target)))``. The builder does not reorder.
    """

    def __init__(self, base: CommandExecutor):
        self._base = base
        self._factories: List[DecoratorFactory] = []

    def with_retry(self, max_retries: Optional[int] = None, initial_delay: Optional[float] = None,
                   backoff_multiplier: Optional[float] = None, classifier: Optional[ErrorClassifier] = None,
                   settings: Optional[RetrySettings] = None) -> "ExecutorBuilder":
        base = settings or RetrySettings()
        overrides = {
            key: value for key, value in (
                ("max_retries", max_retries),
                ("initial_delay", initial_delay),
                ("backoff_multiplier", backoff_multiplier),
            ) if value is not None
        }
        retry_settings = RetrySettings(**{**base.model_dump(), **overrides})
        self._factories.append(lambda inner: RetryExecutor(inner, retry_settings, classifier))
        return self

    def with_timeout(self, timeout: Optional[float] = None) -> "ExecutorBuilder":
        self._factories.append(lambda inner: TimeoutExecutor(inner, timeout))
        return self

    def with_logging(self, log: Optional[logging.Logger] = None, log_command: bool = True,
                     log_result: bool = True, log_error: bool = True) -> "ExecutorBuilder":
        self._factories.append(
            lambda inner: LoggingExecutor(inner, log, log_command=log_command,
                                          log_result=log_result, log_error=log_error)
        )
        return self

    def with_custom(self, factory: DecoratorFactory) -> "ExecutorBuilder":
        """Add any callable taking the inner executor and returning a wrapper."""
        self._factories.append(factory)
        return self

    def build(self) -> CommandExecutor:
        executor = self._base
        for factory in self._factories:
            executor = factory(executor)
        return executor

    def clear(self) -> "ExecutorBuilder":
        self._factories.clear()
        return self

    @property
    def decorator_count(self) -> int:
        return len(self._factories)
