"""Base accelerator handler."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from ..config import LifecycleSettings
from ..execution.base import CommandExecutor
from ..models import AcceleratorDevice, AcceleratorProcess, AcceleratorVendor, KillReport
from ..utils.processes import command_lines, is_process_alive, send_signal, terminate_process

logger = logging.getLogger(__name__)


class AcceleratorHandler(ABC):
    """Vendor-specific accelerator inventory and process control.

    Listing methods degrade to empty lists when the vendor tool is missing or
    its output cannot be parsed; only ``is_available`` decides vendor presence.
    """

    vendor: AcceleratorVendor

    def __init__(self, settings: Optional[LifecycleSettings] = None):
        self.settings = settings or LifecycleSettings()

    @abstractmethod
    async def is_available(self, executor: CommandExecutor) -> bool:
        """Cheap probe for the vendor tool on the host."""
        pass

    @abstractmethod
    async def list_devices(self, executor: CommandExecutor) -> List[AcceleratorDevice]:
        pass

    @abstractmethod
    async def list_processes(self, executor: CommandExecutor) -> List[AcceleratorProcess]:
        pass

    async def kill_process(self, executor: CommandExecutor, pid: int, force: bool = False) -> bool:
        """Terminate ``pid``; gracefully unless ``force``. True if it is gone."""
        logger.info(f"Killing {self.vendor.value} accelerator process {pid}{' (force)' if force else ''}")
        if force:
            await send_signal(executor, pid, 9)
            return not await is_process_alive(executor, pid)
        return await terminate_process(executor, pid, self.settings.kill_grace_period)

    async def kill_processes(self, executor: CommandExecutor, pids: Iterable[int],
                             force: bool = False) -> KillReport:
        """Kill ``pids`` in groups of ``kill_batch_size`` to bound concurrent channels."""
        pid_list = list(dict.fromkeys(int(pid) for pid in pids))
        report = KillReport()
        batch_size = self.settings.kill_batch_size
        for start in range(0, len(pid_list), batch_size):
            batch = pid_list[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.kill_process(executor, pid, force) for pid in batch),
                return_exceptions=True,
            )
            for pid, outcome in zip(batch, outcomes):
                if outcome is True:
                    report.killed.append(pid)
                else:
                    if isinstance(outcome, Exception):
                        logger.error(f"Killing process {pid} raised: {outcome}")
                    report.failed.append(pid)
        logger.info(f"Batch kill finished: {len(report.killed)} killed, {len(report.failed)} failed")
        return report

    async def _with_command_lines(self, executor: CommandExecutor,
                                  processes: List[AcceleratorProcess]) -> List[AcceleratorProcess]:
        """Fill in full command lines from ``ps``; processes without one keep their name."""
        if not processes:
            return processes
        commands = await command_lines(executor, [proc.pid for proc in processes])
        return [
            proc.model_copy(update={"command": commands.get(proc.pid) or proc.command or proc.name})
            for proc in processes
        ]
