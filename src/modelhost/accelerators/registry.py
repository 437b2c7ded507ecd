"""Vendor detection and dispatch across accelerator handlers."""

import logging
from typing import Dict, List, Optional, Sequence

from ..config import LifecycleSettings
from ..execution.base import CommandExecutor
from ..models import AcceleratorDevice, AcceleratorProcess, AcceleratorVendor, KillReport
from .amd import AmdHandler
from .base import AcceleratorHandler
from .intel import IntelHandler
from .nvidia import NvidiaHandler

logger = logging.getLogger(__name__)


class AcceleratorRegistry:
    """Probes vendors in priority order and remembers the answer per host.

    Only the vendor is cached, never device or process lists. A host without
    any accelerator is cached as ``None`` as well; call ``clear`` after
    installing drivers on it.
    """

    def __init__(self, handlers: Optional[Sequence[AcceleratorHandler]] = None,
                 settings: Optional[LifecycleSettings] = None):
        if handlers is None:
            handlers = [NvidiaHandler(settings), AmdHandler(settings), IntelHandler(settings)]
        self.handlers: List[AcceleratorHandler] = list(handlers)
        self._vendors: Dict[str, Optional[AcceleratorVendor]] = {}

    def handler_for(self, vendor: AcceleratorVendor) -> Optional[AcceleratorHandler]:
        for handler in self.handlers:
            if handler.vendor == vendor:
                return handler
        return None

    async def detect_vendor(self, host_key: str, executor: CommandExecutor) -> Optional[AcceleratorVendor]:
        if host_key in self._vendors:
            return self._vendors[host_key]

        vendor: Optional[AcceleratorVendor] = None
        for handler in self.handlers:
            try:
                available = await handler.is_available(executor)
            except Exception as e:
                logger.warning(f"{handler.vendor.value} probe failed on {host_key}: {e}")
                available = False
            if available:
                vendor = handler.vendor
                break

        self._vendors[host_key] = vendor
        if vendor is None:
            logger.info(f"No accelerator vendor detected on {host_key}")
        else:
            logger.info(f"Detected {vendor.value} accelerators on {host_key}")
        return vendor

    async def get_handler(self, host_key: str, executor: CommandExecutor) -> Optional[AcceleratorHandler]:
        vendor = await self.detect_vendor(host_key, executor)
        return self.handler_for(vendor) if vendor is not None else None

    async def list_devices(self, host_key: str, executor: CommandExecutor) -> List[AcceleratorDevice]:
        handler = await self.get_handler(host_key, executor)
        if handler is None:
            return []
        return await handler.list_devices(executor)

    async def list_processes(self, host_key: str, executor: CommandExecutor) -> List[AcceleratorProcess]:
        handler = await self.get_handler(host_key, executor)
        if handler is None:
            return []
        return await handler.list_processes(executor)

    async def kill_process(self, host_key: str, executor: CommandExecutor, pid: int,
                           force: bool = False) -> bool:
        handler = await self.get_handler(host_key, executor)
        if handler is None:
            # Killing is vendor-agnostic, any handler will do
            handler = self.handlers[0]
        return await handler.kill_process(executor, pid, force)

    async def kill_processes(self, host_key: str, executor: CommandExecutor, pids: List[int],
                             force: bool = False) -> KillReport:
        handler = await self.get_handler(host_key, executor)
        if handler is None:
            handler = self.handlers[0]
        return await handler.kill_processes(executor, pids, force)

    def clear(self, host_key: Optional[str] = None) -> None:
        """Forget the cached vendor for ``host_key``, or for every host."""
        if host_key is None:
            self._vendors.clear()
        else:
            self._vendors.pop(host_key, None)
