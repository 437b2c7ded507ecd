"""Execution target interfaces."""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..models import ConnectResult, ExecutionOptions, ExecutionResult, HostIdentity

logger = logging.getLogger(__name__)

CloseListener = Callable[["ExecutionTarget"], None]


class CommandExecutor(ABC):
    """Anything that can run one shell command and return a structured result.

    Implementations never raise for a failed command; failures come back as
    ``ExecutionResult(success=False)``.
    """

    @abstractmethod
    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """Run ``command`` once."""
        pass


class ExecutionTarget(CommandExecutor):
    """A host commands run on: the local machine or a remote shell."""

    def __init__(self, identity: HostIdentity):
        self.identity = identity
        self._close_listeners: List[CloseListener] = []

    @property
    def key(self) -> str:
        return self.identity.key

    @abstractmethod
    async def connect(self) -> ConnectResult:
        """Establish the connection. Calling it on a ready target is a no-op."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the connection and notify close listeners."""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    def add_close_listener(self, listener: CloseListener) -> None:
        if listener not in self._close_listeners:
            self._close_listeners.append(listener)

    def remove_close_listener(self, listener: CloseListener) -> None:
        if listener in self._close_listeners:
            self._close_listeners.remove(listener)

    def _notify_closed(self) -> None:
        for listener in list(self._close_listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Close listener failed for {self.key}: {e}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key})"
