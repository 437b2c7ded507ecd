"""Start/stop state machine for long-running model-serving processes."""

import asyncio
import logging
import posixpath
import shlex
from dataclasses import replace
from typing import AsyncIterator, Dict, List, Optional, Set

from ..accelerators.registry import AcceleratorRegistry
from ..config import LifecycleSettings
from ..exceptions import InvalidTransitionError, PortInUseError, ServiceStartError, ServiceStopError
from ..execution.base import CommandExecutor
from ..models import AcceleratorProcess, LogChunk, ServiceDescriptor, ServiceState, ServiceStatus, StopReport
from ..utils.parsing import parse_int
from ..utils.processes import child_pids, is_process_alive, send_signal
from .commands import CommandSignature, compose_launch_command, parse_start_command
from .discovery import ToolLocator
from .environments import get_environment_adapter
from .matcher import ProcessMatcher

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[ServiceState, Set[ServiceState]] = {
    ServiceState.STOPPED: {ServiceState.STARTING, ServiceState.STOPPING},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.ERROR},
    ServiceState.RUNNING: {ServiceState.STOPPING},
    ServiceState.STOPPING: {ServiceState.STOPPED, ServiceState.ERROR},
    ServiceState.ERROR: {ServiceState.STARTING, ServiceState.STOPPING},
}


class ServiceLifecycleManager:
    """Drives services through stopped, starting, running, stopping and back.

    Descriptors are tracked in memory by id. ``error`` is entered when a start
    or a stop fails; from there a service can be started again or stopped to
    clean up whatever the failed attempt left behind.

    One transition skips the forward chain: ``stopped -> stopping``. A stop
    request for a service this process never started (or already saw stop)
    still runs the full kill cascade, since its processes may outlive the
    descriptor that launched them.
    """

    def __init__(self, registry: AcceleratorRegistry, locator: ToolLocator,
                 settings: Optional[LifecycleSettings] = None, matcher: Optional[ProcessMatcher] = None):
        self.registry = registry
        self.locator = locator
        self.settings = settings or LifecycleSettings()
        self.matcher = matcher or ProcessMatcher()
        self._services: Dict[str, ServiceDescriptor] = {}

    # Tracking

    def get(self, service_id: str) -> Optional[ServiceDescriptor]:
        return self._services.get(service_id)

    def list_services(self) -> List[ServiceDescriptor]:
        return list(self._services.values())

    def forget(self, service_id: str) -> None:
        self._services.pop(service_id, None)

    def _track(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        """Register ``descriptor``, keeping the known state of a tracked service."""
        known = self._services.get(descriptor.id)
        if known is not None:
            descriptor = descriptor.model_copy(update={
                "state": known.state,
                "pid": descriptor.pid if descriptor.pid is not None else known.pid,
            })
        self._services[descriptor.id] = descriptor
        return descriptor

    def _transition(self, descriptor: ServiceDescriptor, state: ServiceState, **updates) -> ServiceDescriptor:
        current = self._services.get(descriptor.id, descriptor).state
        if state not in TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Service {descriptor.id} cannot go from {current.value} to {state.value}"
            )
        updated = descriptor.model_copy(update={"state": state, **updates})
        self._services[descriptor.id] = updated
        logger.info(f"Service {descriptor.id}: {current.value} -> {state.value}")
        return updated

    def _signature(self, descriptor: ServiceDescriptor) -> CommandSignature:
        signature = parse_start_command(descriptor.start_command, self.settings.frameworks)
        overrides = {}
        if descriptor.port is not None and signature.port is None:
            overrides["port"] = descriptor.port
        if descriptor.model_path and not signature.model_path:
            overrides["model_path"] = descriptor.model_path
        if overrides:
            signature = replace(signature, **overrides)
        return signature

    # Start

    async def start(self, descriptor: ServiceDescriptor, executor: CommandExecutor) -> ServiceDescriptor:
        """Launch the service and confirm it is up.

        Raises:
            PortInUseError: If the service port is already bound.
            ToolNotFoundError: If the environment tool cannot be located.
            ServiceStartError: If the launch fails or the service does not come up;
                carries the tail of the service log.
        """
        descriptor = self._track(descriptor)
        descriptor = self._transition(descriptor, ServiceState.STARTING)
        signature = self._signature(descriptor)
        host_key = descriptor.server_id

        try:
            log_dir = posixpath.dirname(descriptor.log_path)
            if log_dir:
                result = await executor.execute(f"mkdir -p {shlex.quote(log_dir)}")
                if not result.success:
                    raise ServiceStartError(f"Could not create log directory {log_dir}: {result.stderr.strip()}")

            if signature.port is not None and await self.matcher.is_port_listening(executor, signature.port):
                raise PortInUseError(signature.port)

            adapter = get_environment_adapter(descriptor.env_type, self.locator)
            runner = await adapter.runner(signature.clean, descriptor.env_name, executor, host_key)
            launch = compose_launch_command(runner, descriptor.log_path, signature.visibility, adapter.login_shell)

            logger.info(f"Starting service {descriptor.id} on {host_key}: {signature.clean}")
            result = await executor.execute(launch)
            if not result.success:
                raise ServiceStartError(
                    f"Launch command failed: {(result.stderr or result.error or '').strip()}",
                    await self.read_log(executor, descriptor.log_path),
                )

            if self.settings.settle_delay:
                await asyncio.sleep(self.settings.settle_delay)

            status = await self._probe(executor, signature)
            if not status.running:
                raise ServiceStartError(
                    f"Service {descriptor.id} did not come up: {status.message}",
                    await self.read_log(executor, descriptor.log_path),
                )
        except Exception:
            self._transition(descriptor, ServiceState.ERROR)
            raise

        logger.info(f"Service {descriptor.id} running with pid {status.pid}")
        return self._transition(descriptor, ServiceState.RUNNING, pid=status.pid, port=signature.port)

    # Status

    async def status(self, descriptor: ServiceDescriptor, executor: CommandExecutor) -> ServiceStatus:
        """Probe the port and the process table; running only if both agree."""
        signature = self._signature(descriptor)
        status = await self._probe(executor, signature, descriptor.pid)
        known = self._services.get(descriptor.id)
        if known is not None and status.pid and known.pid != status.pid:
            self._services[descriptor.id] = known.model_copy(update={"pid": status.pid})
        return status

    async def _probe(self, executor: CommandExecutor, signature: CommandSignature,
                     known_pid: Optional[int] = None) -> ServiceStatus:
        port = signature.port
        port_listening = await self.matcher.is_port_listening(executor, port) if port is not None else False

        entries = await self.matcher.snapshot(executor)
        matches = self.matcher.find_service_processes(entries, signature)
        match_pids = [entry.pid for entry in matches]

        port_pids: List[int] = []
        if port is not None and port_listening:
            port_pids = await self.matcher.pids_on_port(executor, port)

        pid = None
        if known_pid is not None and known_pid in match_pids:
            pid = known_pid
        else:
            owned = [p for p in port_pids if p in match_pids]
            if owned:
                pid = owned[0]
            elif match_pids:
                pid = match_pids[0]
            elif port_pids:
                pid = port_pids[0]

        process_running = bool(matches)
        running = process_running and (port_listening if port is not None else True)

        if running:
            message = "Service is running"
        elif port is not None and not port_listening and process_running:
            message = f"Process found but port {port} is not listening"
        elif port_listening and not process_running:
            message = f"Port {port} is listening but no matching process was found"
        else:
            message = "Service is not running"

        return ServiceStatus(
            running=running,
            pid=pid,
            port=port,
            port_listening=port_listening,
            process_running=process_running,
            message=message,
        )

    async def check_pid(self, executor: CommandExecutor, pid: int) -> ServiceStatus:
        result = await executor.execute(f"ps -p {int(pid)} -o pid=,args=")
        running = result.success and bool(result.stdout.strip())
        message = result.stdout.strip().split(None, 1)[-1] if running else "Process not found"
        return ServiceStatus(running=running, pid=int(pid), process_running=running, message=message)

    async def read_log(self, executor: CommandExecutor, log_path: str, lines: Optional[int] = None) -> str:
        lines = lines or self.settings.log_tail_lines
        result = await executor.execute(f"tail -n {int(lines)} {shlex.quote(log_path)} 2>/dev/null")
        return result.stdout if result.success else ""

    async def read_log_chunk(self, executor: CommandExecutor, log_path: str, offset: int = 0) -> LogChunk:
        """Read what was appended to ``log_path`` since byte ``offset``.

        A file smaller than ``offset`` was truncated or rotated and is read
        from the start. A missing file yields an empty chunk.
        """
        quoted = shlex.quote(log_path)
        size_result = await executor.execute(f"wc -c < {quoted}")
        size = parse_int(size_result.stdout) if size_result.success else None
        if size is None:
            return LogChunk(path=log_path, offset=offset, next_offset=offset)

        rotated = size < offset
        start = 0 if rotated else offset
        if rotated:
            logger.info(f"Log {log_path} shrank below offset {offset}, reading from the start")
        if size == start:
            return LogChunk(path=log_path, offset=start, next_offset=start, rotated=rotated)

        length = size - start
        result = await executor.execute(f"tail -c +{start + 1} {quoted} | head -c {length}")
        if not result.success:
            return LogChunk(path=log_path, offset=start, next_offset=start, rotated=rotated)
        return LogChunk(path=log_path, offset=start, next_offset=start + length,
                        data=result.stdout, rotated=rotated)

    async def follow_log(self, executor: CommandExecutor, log_path: str, offset: int = 0,
                         poll_interval: float = 1.0) -> AsyncIterator[LogChunk]:
        """Yield log output as it is appended, until the caller stops iterating."""
        while True:
            chunk = await self.read_log_chunk(executor, log_path, offset)
            offset = chunk.next_offset
            if chunk.data or chunk.rotated:
                yield chunk
            await asyncio.sleep(poll_interval)

    # Stop

    async def stop(self, descriptor: ServiceDescriptor, executor: CommandExecutor) -> StopReport:
        """Hunt down and kill every process of the service.

        Each step is best-effort and later steps run even if earlier ones
        fail. Finding nothing at all counts as success (already stopped).

        Raises:
            ServiceStopError: If the host cannot be reached at all.
        """
        descriptor = self._track(descriptor)
        descriptor = self._transition(descriptor, ServiceState.STOPPING)
        signature = self._signature(descriptor)
        host_key = descriptor.server_id

        reach = await executor.execute("echo ok")
        if not reach.success:
            self._transition(descriptor, ServiceState.ERROR)
            raise ServiceStopError(
                f"Cannot reach {host_key} to stop {descriptor.id}: {(reach.stderr or reach.error or '').strip()}"
            )

        report = StopReport()
        killed: Set[int] = set()

        async def run_step(name: str, step) -> None:
            try:
                pids = await step()
            except Exception as e:
                logger.warning(f"Stop step '{name}' failed for {descriptor.id}: {e}")
                pids = []
            report.steps[name] = pids
            for pid in pids:
                if pid not in killed:
                    killed.add(pid)
                    report.killed_pids.append(pid)

        snapshot: List[AcceleratorProcess] = []
        try:
            snapshot = await self._service_accelerator_processes(executor, host_key, signature, descriptor.pid)
        except Exception as e:
            logger.warning(f"Accelerator snapshot failed before stopping {descriptor.id}: {e}")

        if descriptor.pid:
            await run_step("pid", lambda: self._kill_tree(executor, descriptor.pid, killed))
        if signature.model_path:
            await run_step("model_path", lambda: self._kill_matching(executor, signature.model_path, None, killed))
        if signature.port is not None:
            await run_step("port", lambda: self._kill_port(executor, signature.port, killed))
        await run_step("keyword", lambda: self._kill_matching(
            executor, signature.framework_keyword, signature.port, killed))

        if self.settings.post_kill_wait:
            await asyncio.sleep(self.settings.post_kill_wait)

        await run_step("accelerator_snapshot", lambda: self._kill_survivors(executor, snapshot, killed))
        await run_step("accelerator_verify", lambda: self._kill_remaining_accelerator(
            executor, host_key, signature, killed))

        self._transition(descriptor, ServiceState.STOPPED, pid=None)
        logger.info(f"Stopped service {descriptor.id}: {report.message}")
        return report

    async def _kill_pids(self, executor: CommandExecutor, pids: List[int], killed: Set[int]) -> List[int]:
        """SIGKILL ``pids`` in bounded batches; returns those the kill succeeded for."""
        targets = [pid for pid in dict.fromkeys(pids) if pid > 1 and pid not in killed]
        done: List[int] = []
        batch_size = self.settings.kill_batch_size
        for start in range(0, len(targets), batch_size):
            batch = targets[start:start + batch_size]
            outcomes = await asyncio.gather(*(send_signal(executor, pid, 9) for pid in batch))
            done.extend(pid for pid, ok in zip(batch, outcomes) if ok)
        return done

    async def _kill_tree(self, executor: CommandExecutor, pid: int, killed: Set[int]) -> List[int]:
        if pid <= 1:
            return []
        children = await child_pids(executor, pid)
        done = await self._kill_pids(executor, children, killed)
        done += await self._kill_pids(executor, [pid], killed | set(done))
        return done

    async def _kill_matching(self, executor: CommandExecutor, needle: str, port: Optional[int],
                             killed: Set[int]) -> List[int]:
        entries = await self.matcher.snapshot(executor)
        matches = self.matcher.find_by_substring(entries, needle, port)
        return await self._kill_pids(executor, [entry.pid for entry in matches], killed)

    async def _kill_port(self, executor: CommandExecutor, port: int, killed: Set[int]) -> List[int]:
        return await self._kill_pids(executor, await self.matcher.pids_on_port(executor, port), killed)

    async def _service_accelerator_processes(self, executor: CommandExecutor, host_key: str,
                                             signature: CommandSignature,
                                             known_pid: Optional[int]) -> List[AcceleratorProcess]:
        """Accelerator processes owned by the service, captured before anything is killed."""
        processes = await self.registry.list_processes(host_key, executor)
        if not processes:
            return []
        entries = await self.matcher.snapshot(executor)
        roots = [entry.pid for entry in self.matcher.find_service_processes(entries, signature)]
        if known_pid:
            roots.append(known_pid)
        related = self.matcher.related_pids(entries, roots)
        owned = [
            proc for proc in processes
            if proc.pid in related or self.matcher.references_service(proc, signature)
        ]
        logger.debug(f"Captured {len(owned)} accelerator processes of the service before stopping")
        return owned

    async def _kill_survivors(self, executor: CommandExecutor, snapshot: List[AcceleratorProcess],
                              killed: Set[int]) -> List[int]:
        survivors = []
        for proc in snapshot:
            if proc.pid not in killed and await is_process_alive(executor, proc.pid):
                survivors.append(proc.pid)
        return await self._kill_pids(executor, survivors, killed)

    async def _kill_remaining_accelerator(self, executor: CommandExecutor, host_key: str,
                                          signature: CommandSignature, killed: Set[int]) -> List[int]:
        handler = await self.registry.get_handler(host_key, executor)
        if handler is None:
            return []
        processes = await handler.list_processes(executor)
        leftovers = [
            proc.pid for proc in processes
            if proc.pid not in killed and self.matcher.references_service(proc, signature)
        ]
        if not leftovers:
            return []
        logger.info(f"Terminating {len(leftovers)} accelerator processes still referencing the service")
        report = await handler.kill_processes(executor, leftovers)
        return report.killed
