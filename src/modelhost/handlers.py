"""Inbound operations returning tagged results.

These are the functions a UI or IPC layer calls. They never raise: every
failure comes back as ``OperationResult(success=False, error=...)`` and is
reported on the context's error bus.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Union

from .context import ApplicationContext
from .models import (
    EnvironmentType,
    ExecutionOptions,
    OperationResult,
    ServiceDescriptor,
)
from .services.environments import get_environment_adapter

logger = logging.getLogger(__name__)

DescriptorInput = Union[ServiceDescriptor, Dict[str, Any]]


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


class Handlers:
    """Tagged-result facade over an ``ApplicationContext``."""

    def __init__(self, context: ApplicationContext):
        self.context = context

    async def _guard(self, operation: str, call: Awaitable[Any],
                     context: Optional[Dict[str, Any]] = None) -> OperationResult:
        try:
            return OperationResult.ok(_dump(await call))
        except Exception as e:
            record = self.context.reporter.report(e, {"operation": operation, **(context or {})})
            logger.error(f"{operation} failed ({record.kind.value}): {e}")
            return OperationResult.fail(str(e) or type(e).__name__)

    def _descriptor(self, server_id: str, service: DescriptorInput) -> ServiceDescriptor:
        if isinstance(service, ServiceDescriptor):
            descriptor = service
        else:
            descriptor = ServiceDescriptor(**{"server_id": server_id, **service})
        if descriptor.server_id != server_id:
            descriptor = descriptor.model_copy(update={"server_id": server_id})
        known = self.context.lifecycle.get(descriptor.id)
        if known is not None and descriptor.pid is None:
            descriptor = descriptor.model_copy(update={"pid": known.pid})
        return descriptor

    # Connections

    async def connect_server(self, server_id: str) -> OperationResult:
        async def call():
            server = self.context.get_server(server_id)
            target = await self.context.pool.acquire(server.identity, server.credentials)
            try:
                if not target.is_connected():
                    reason = getattr(target, "last_error", None) or "connection failed"
                    raise ConnectionError(f"Could not connect to {server.identity.key}: {reason}")
                return {"server_id": server_id, "key": server.identity.key, "connected": True}
            finally:
                await self.context.pool.release(server.identity)

        return await self._guard("connect_server", call(), {"server_id": server_id})

    async def disconnect_server(self, server_id: str) -> OperationResult:
        async def call():
            server = self.context.get_server(server_id)
            removed = await self.context.pool.remove(server.identity, force=True)
            return {"server_id": server_id, "disconnected": removed}

        return await self._guard("disconnect_server", call(), {"server_id": server_id})

    async def execute_command(self, server_id: str, command: str,
                              timeout: Optional[float] = None) -> OperationResult:
        """Run ``command``; a failed command is still a successful call carrying its result."""
        async def call():
            options = ExecutionOptions(timeout=timeout) if timeout is not None else None
            async with self.context.session(server_id) as executor:
                return await executor.execute(command, options)

        return await self._guard("execute_command", call(), {"server_id": server_id, "command": command})

    # Services

    async def start_service(self, server_id: str, service: DescriptorInput) -> OperationResult:
        async def call():
            descriptor = self._descriptor(server_id, service)
            async with self.context.session(server_id) as executor:
                return await self.context.lifecycle.start(descriptor, executor)

        return await self._guard("start_service", call(), {"server_id": server_id})

    async def stop_service(self, server_id: str, service: DescriptorInput) -> OperationResult:
        async def call():
            descriptor = self._descriptor(server_id, service)
            async with self.context.session(server_id) as executor:
                report = await self.context.lifecycle.stop(descriptor, executor)
            return {**report.model_dump(mode="json"), "message": report.message,
                    "already_stopped": report.already_stopped}

        return await self._guard("stop_service", call(), {"server_id": server_id})

    async def check_service_status(self, server_id: str, service: DescriptorInput) -> OperationResult:
        async def call():
            descriptor = self._descriptor(server_id, service)
            async with self.context.session(server_id) as executor:
                return await self.context.lifecycle.status(descriptor, executor)

        return await self._guard("check_service_status", call(), {"server_id": server_id})

    async def check_all_status(self) -> OperationResult:
        """Probe every tracked service concurrently, keyed by service id."""
        services = self.context.lifecycle.list_services()
        results = await asyncio.gather(*(
            self.check_service_status(service.server_id, service) for service in services
        ))
        return OperationResult.ok({
            service.id: result.model_dump(mode="json") for service, result in zip(services, results)
        })

    async def read_service_log(self, server_id: str, log_path: str,
                               lines: Optional[int] = None) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.lifecycle.read_log(executor, log_path, lines)

        return await self._guard("read_service_log", call(), {"server_id": server_id})

    async def read_service_log_chunk(self, server_id: str, log_path: str, offset: int = 0) -> OperationResult:
        """Incremental log read; pass the returned ``next_offset`` back to continue."""
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.lifecycle.read_log_chunk(executor, log_path, offset)

        return await self._guard("read_service_log_chunk", call(), {"server_id": server_id})

    # Host system

    async def get_system_info(self, server_id: str) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.system_info.collect(executor, server_id)

        return await self._guard("get_system_info", call(), {"server_id": server_id})

    # Accelerators

    async def list_accelerator_devices(self, server_id: str) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.accelerators.list_devices(server_id, executor)

        return await self._guard("list_accelerator_devices", call(), {"server_id": server_id})

    async def list_accelerator_processes(self, server_id: str) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.accelerators.list_processes(server_id, executor)

        return await self._guard("list_accelerator_processes", call(), {"server_id": server_id})

    async def kill_accelerator_process(self, server_id: str, pid: int, force: bool = False) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                killed = await self.context.accelerators.kill_process(server_id, executor, pid, force)
            if not killed:
                raise RuntimeError(f"Process {pid} is still alive")
            return {"pid": pid, "killed": True}

        return await self._guard("kill_accelerator_process", call(), {"server_id": server_id, "pid": pid})

    async def kill_accelerator_processes(self, server_id: str, pids: List[int],
                                         force: bool = False) -> OperationResult:
        async def call():
            async with self.context.session(server_id) as executor:
                return await self.context.accelerators.kill_processes(server_id, executor, pids, force)

        return await self._guard("kill_accelerator_processes", call(), {"server_id": server_id})

    # Environments

    async def list_environments(self, server_id: str,
                                env_type: Optional[EnvironmentType] = None) -> OperationResult:
        async def call():
            types = [EnvironmentType(env_type)] if env_type else list(EnvironmentType)
            envs = []
            async with self.context.session(server_id) as executor:
                for kind in types:
                    adapter = get_environment_adapter(kind, self.context.locator)
                    envs.extend(await adapter.list_environments(executor, server_id))
            return envs

        return await self._guard("list_environments", call(), {"server_id": server_id})

    # Introspection

    async def pool_stats(self) -> OperationResult:
        return OperationResult.ok({
            **self.context.pool.get_stats(),
            "connections": self.context.pool.list_connections(),
        })

    async def error_stats(self) -> OperationResult:
        return OperationResult.ok({
            **self.context.error_log.get_error_stats(),
            "recent": _dump(self.context.error_log.get_errors()[-10:]),
        })
