"""Command execution targets, pooling and resilience decorators."""

from .base import CommandExecutor, ExecutionTarget
from .local import LocalTarget
from .remote import RemoteShellTarget
from .factory import create_target
from .pool import ConnectionPool, PooledConnection
from .decorators import ExecutorDecorator, RetryExecutor, TimeoutExecutor, LoggingExecutor
from .builder import ExecutorBuilder

__all__ = [
    "CommandExecutor",
    "ExecutionTarget",
    "LocalTarget",
    "RemoteShellTarget",
    "create_target",
    "ConnectionPool",
    "PooledConnection",
    "ExecutorDecorator",
    "RetryExecutor",
    "TimeoutExecutor",
    "LoggingExecutor",
    "ExecutorBuilder",
]
