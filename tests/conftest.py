"""Shared test fixtures and configuration for modelhost tests."""

import re
from typing import Callable, List, Optional, Tuple, Union

import pytest

from modelhost.config import (
    ExecutionSettings,
    LifecycleSettings,
    PoolSettings,
    RetrySettings,
)
from modelhost.execution.base import CommandExecutor, ExecutionTarget
from modelhost.models import ConnectResult, ExecutionOptions, ExecutionResult, HostIdentity

Response = Union[ExecutionResult, str, Callable[[str, "re.Match"], Union[ExecutionResult, str]]]


def ok(stdout: str = "") -> ExecutionResult:
    return ExecutionResult(success=True, exit_code=0, stdout=stdout)


def fail(stderr: str = "", exit_code: int = 1, stdout: str = "") -> ExecutionResult:
    return ExecutionResult(success=False, exit_code=exit_code, stdout=stdout, stderr=stderr)


class FakeShell(CommandExecutor):
    """Scripted executor: commands are answered by the most recently added matching rule.

    Unmatched commands fail like a missing binary (exit 127).
    """

    def __init__(self):
        self.rules: List[Tuple["re.Pattern[str]", Response]] = []
        self.calls: List[str] = []

    def on(self, pattern: str, response: Response) -> "FakeShell":
        self.rules.insert(0, (re.compile(pattern), response))
        return self

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        self.calls.append(command)
        for pattern, response in self.rules:
            match = pattern.search(command)
            if match is None:
                continue
            if callable(response):
                response = response(command, match)
            if isinstance(response, str):
                return ok(response)
            return response
        return fail("command not found", exit_code=127)

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, call) for call in self.calls)

    def count(self, pattern: str) -> int:
        return sum(1 for call in self.calls if re.search(pattern, call))


class FakeTarget(ExecutionTarget):
    """In-memory execution target recording connects and disconnects."""

    def __init__(self, identity: HostIdentity, connect_ok: bool = True):
        super().__init__(identity)
        self.connect_ok = connect_ok
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def connect(self) -> ConnectResult:
        self.connect_calls += 1
        if not self.connect_ok:
            return ConnectResult(success=False, message="Connection failed", error="Connection refused")
        self.connected = True
        return ConnectResult(success=True)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self._notify_closed()

    def is_connected(self) -> bool:
        return self.connected

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        if not self.connected:
            return ExecutionResult.failure(f"Not connected to {self.key}")
        return ok(command)


@pytest.fixture
def shell():
    """An empty scripted shell."""
    return FakeShell()


@pytest.fixture
def remote_identity():
    return HostIdentity(host="gpu-01.example.com", port=22, username="ubuntu")


@pytest.fixture
def fast_retry_settings():
    """Retry settings without real waiting."""
    return RetrySettings(max_retries=3, initial_delay=0.001, backoff_multiplier=2.0)


@pytest.fixture
def pool_settings():
    return PoolSettings(soft_max_size=3, idle_timeout=300.0, max_age=3600.0, cleanup_interval=60.0)


@pytest.fixture
def execution_settings():
    return ExecutionSettings(command_timeout=10.0, connect_timeout=1.0, poll_interval=0.001)


@pytest.fixture
def lifecycle_settings():
    """Lifecycle settings with every wait disabled."""
    return LifecycleSettings(settle_delay=0, kill_grace_period=0, post_kill_wait=0,
                             log_tail_lines=20, kill_batch_size=2)


@pytest.fixture
def target_factory():
    """Pool target factory producing FakeTargets and remembering them."""
    created: List[FakeTarget] = []

    def factory(identity, credentials=None):
        target = FakeTarget(identity)
        created.append(target)
        return target

    factory.created = created
    return factory
