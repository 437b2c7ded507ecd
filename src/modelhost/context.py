"""Application context wiring the pool, error bus, accelerators and lifecycle together."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .accelerators.registry import AcceleratorRegistry
from .config import Settings
from .errors.bus import ErrorBus, ErrorLogSubscriber, ErrorNotifier, ErrorReporter
from .errors.classifier import ErrorClassifier
from .exceptions import UnknownServerError
from .execution.base import CommandExecutor
from .execution.builder import ExecutorBuilder
from .execution.pool import ConnectionPool, TargetFactory
from .models import ServerConfig
from .services.discovery import ToolLocator
from .services.lifecycle import ServiceLifecycleManager
from .services.system_info import SystemInfoService
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


class ApplicationContext:
    """Owns every long-lived component.

    Components are built once from a single ``Settings`` object and share
    state through this context: all sessions go through the same pool, all
    errors through the same bus.
    """

    def __init__(self, settings: Optional[Settings] = None, configure_logging: bool = False,
                 target_factory: Optional[TargetFactory] = None):
        """Initialize the application context.

        Args:
            settings: Aggregate settings. If None, will load from environment.
            configure_logging: Install the stdout handler from the logging settings.
            target_factory: Builds execution targets for the pool. Defaults to local or SSH targets.
        """
        self.settings = settings or Settings()
        if configure_logging:
            setup_logging(self.settings.logging.log_level, self.settings.logging.log_format)

        self.pool = ConnectionPool(self.settings.pool, target_factory, self.settings.execution)

        self.classifier = ErrorClassifier()
        self.error_bus = ErrorBus()
        self.error_log = ErrorLogSubscriber()
        self.notifier = ErrorNotifier()
        self.error_bus.subscribe(self.error_log)
        self.error_bus.subscribe(self.notifier)
        self.reporter = ErrorReporter(self.classifier, self.error_bus)

        self.accelerators = AcceleratorRegistry(settings=self.settings.lifecycle)
        self.locator = ToolLocator()
        self.lifecycle = ServiceLifecycleManager(self.accelerators, self.locator, self.settings.lifecycle)
        self.system_info = SystemInfoService()

        self._servers: Dict[str, ServerConfig] = {}
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.pool.start()
        self._started = True
        logger.info("Application context started")

    async def stop(self) -> None:
        """Stop background work and disconnect every pooled connection."""
        await self.pool.stop()
        self._started = False
        logger.info("Application context stopped")

    async def __aenter__(self) -> "ApplicationContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Servers

    def register_server(self, server: ServerConfig) -> None:
        if server.id in self._servers:
            logger.info(f"Replacing registration of server {server.id}")
        self._servers[server.id] = server

    async def unregister_server(self, server_id: str) -> None:
        """Forget a server and drop its pooled connection and cached probes."""
        server = self.get_server(server_id)
        del self._servers[server_id]
        await self.pool.remove(server.identity, force=True)
        self.accelerators.clear(server_id)
        self.locator.clear(server_id)

    def get_server(self, server_id: str) -> ServerConfig:
        server = self._servers.get(server_id)
        if server is None:
            raise UnknownServerError(server_id)
        return server

    def list_servers(self) -> List[ServerConfig]:
        return list(self._servers.values())

    # Sessions

    def decorate(self, executor: CommandExecutor) -> CommandExecutor:
        """Apply the default resilience chain: timeout around retry around logging."""
        return (
            ExecutorBuilder(executor)
            .with_logging()
            .with_retry(classifier=self.classifier, settings=self.settings.retry)
            .with_timeout(self.settings.timeout.timeout)
            .build()
        )

    @asynccontextmanager
    async def session(self, server_id: str, decorated: bool = True) -> AsyncIterator[CommandExecutor]:
        """Check out the server's pooled target for the duration of the block.

        Raises:
            UnknownServerError: If ``server_id`` was never registered.
        """
        server = self.get_server(server_id)
        target = await self.pool.acquire(server.identity, server.credentials)
        try:
            yield self.decorate(target) if decorated else target
        finally:
            await self.pool.release(server.identity)
