"""NVIDIA accelerator handler backed by nvidia-smi."""

import logging
from typing import List

from ..execution.base import CommandExecutor
from ..models import AcceleratorDevice, AcceleratorProcess, AcceleratorVendor
from ..utils.parsing import mib_to_bytes, non_empty_lines, parse_float, parse_int
from .base import AcceleratorHandler

logger = logging.getLogger(__name__)

PROBE_COMMAND = "nvidia-smi --query-gpu=name --format=csv,noheader"
DEVICES_COMMAND = (
    "nvidia-smi --query-gpu=index,name,memory.total,memory.used,utilization.gpu,"
    "temperature.gpu,power.draw,power.limit --format=csv,noheader,nounits"
)
PROCESSES_COMMAND = (
    "nvidia-smi --query-compute-apps=pid,process_name,used_memory,gpu_uuid "
    "--format=csv,noheader,nounits"
)


class NvidiaHandler(AcceleratorHandler):
    """NVIDIA GPUs via nvidia-smi CSV queries."""

    vendor = AcceleratorVendor.NVIDIA

    async def is_available(self, executor: CommandExecutor) -> bool:
        result = await executor.execute(PROBE_COMMAND)
        return result.success and bool(result.stdout.strip())

    async def list_devices(self, executor: CommandExecutor) -> List[AcceleratorDevice]:
        result = await executor.execute(DEVICES_COMMAND)
        if not result.success:
            logger.debug(f"nvidia-smi device query failed: {result.stderr.strip()}")
            return []
        return self.parse_devices(result.stdout)

    def parse_devices(self, output: str) -> List[AcceleratorDevice]:
        devices = []
        for line in non_empty_lines(output):
            parts = [part.strip() for part in line.split(",")]
            if len(parts) < 6:
                logger.warning(f"Skipping malformed nvidia-smi device line: {line}")
                continue
            index = parse_int(parts[0])
            if index is None:
                logger.warning(f"Skipping nvidia-smi device line without index: {line}")
                continue
            devices.append(AcceleratorDevice(
                id=index,
                vendor=self.vendor,
                name=parts[1],
                memory_total=mib_to_bytes(parse_float(parts[2])),
                memory_used=mib_to_bytes(parse_float(parts[3])),
                utilization_percent=parse_float(parts[4]),
                temperature=parse_float(parts[5]),
                power_draw=parse_float(parts[6]) if len(parts) > 6 else None,
                power_limit=parse_float(parts[7]) if len(parts) > 7 else None,
            ))
        logger.debug(f"Parsed {len(devices)} NVIDIA devices")
        return devices

    async def list_processes(self, executor: CommandExecutor) -> List[AcceleratorProcess]:
        result = await executor.execute(PROCESSES_COMMAND)
        if not result.success:
            logger.debug(f"nvidia-smi process query failed: {result.stderr.strip()}")
            return []
        processes = self.parse_processes(result.stdout)
        return await self._with_command_lines(executor, processes)

    def parse_processes(self, output: str) -> List[AcceleratorProcess]:
        processes = []
        for line in non_empty_lines(output):
            if "no running processes" in line.lower():
                continue
            parts = [part.strip() for part in line.split(",")]
            pid = parse_int(parts[0]) if parts else None
            if pid is None or len(parts) < 2:
                logger.warning(f"Skipping malformed nvidia-smi process line: {line}")
                continue
            processes.append(AcceleratorProcess(
                pid=pid,
                name=parts[1],
                memory_used=mib_to_bytes(parse_float(parts[2])) if len(parts) > 2 else None,
                vendor=self.vendor,
                device=parts[3] if len(parts) > 3 and parts[3] else None,
            ))
        return processes
