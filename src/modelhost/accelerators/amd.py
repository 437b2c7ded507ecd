"""AMD accelerator handler backed by rocm-smi."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..execution.base import CommandExecutor
from ..models import AcceleratorDevice, AcceleratorProcess, AcceleratorVendor
from ..utils.parsing import parse_float, parse_int
from .base import AcceleratorHandler

logger = logging.getLogger(__name__)

PROBE_COMMAND = "rocm-smi --showproductname"
DEVICES_COMMAND = "rocm-smi --showproductname --showmeminfo vram --showuse --showtemp --json"
PROCESSES_COMMAND = "rocm-smi --showpids --json"
PROCESSES_TEXT_COMMAND = "rocm-smi --showpids"

# rocm-smi renamed most of its JSON keys between releases
_NAME_KEYS = ("Card series", "Card Series", "Card model", "Device Name", "Card SKU")
_MEMORY_TOTAL_KEYS = ("VRAM Total Memory (B)", "VRAM Total")
_MEMORY_USED_KEYS = ("VRAM Total Used Memory (B)", "VRAM Used")
_UTILIZATION_KEYS = ("GPU use (%)", "GPU Use (%)")
_TEMPERATURE_KEYS = ("Temperature (Sensor edge) (C)", "Temperature (Sensor junction) (C)")

_CARD_KEY = re.compile(r"card(\d+)", re.IGNORECASE)
_PID_KEY = re.compile(r"PID\s*:?\s*(\d+)", re.IGNORECASE)
_PID_TABLE_ROW = re.compile(r"^\s*(\d+)\s+(\S+)\s+(\d+)\s+(\d+)")


def _first(values: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        if key in values and values[key] not in (None, ""):
            return str(values[key])
    return None


class AmdHandler(AcceleratorHandler):
    """AMD GPUs via rocm-smi JSON output, with a text fallback for process listings."""

    vendor = AcceleratorVendor.AMD

    async def is_available(self, executor: CommandExecutor) -> bool:
        result = await executor.execute(PROBE_COMMAND)
        return result.success and bool(result.stdout.strip()) and "not found" not in result.stdout.lower()

    async def list_devices(self, executor: CommandExecutor) -> List[AcceleratorDevice]:
        result = await executor.execute(DEVICES_COMMAND)
        if not result.success:
            logger.debug(f"rocm-smi device query failed: {result.stderr.strip()}")
            return []
        return self.parse_devices(result.stdout)

    def parse_devices(self, output: str) -> List[AcceleratorDevice]:
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            logger.warning(f"Could not parse rocm-smi device JSON: {e}")
            return []
        if not isinstance(data, dict):
            return []

        devices = []
        for key, values in data.items():
            match = _CARD_KEY.fullmatch(key)
            if not match or not isinstance(values, dict):
                continue
            devices.append(AcceleratorDevice(
                id=int(match.group(1)),
                vendor=self.vendor,
                name=_first(values, _NAME_KEYS) or "AMD GPU",
                memory_total=parse_int(_first(values, _MEMORY_TOTAL_KEYS)),
                memory_used=parse_int(_first(values, _MEMORY_USED_KEYS)),
                utilization_percent=parse_float(_first(values, _UTILIZATION_KEYS)),
                temperature=parse_float(_first(values, _TEMPERATURE_KEYS)),
            ))
        devices.sort(key=lambda device: device.id)
        logger.debug(f"Parsed {len(devices)} AMD devices")
        return devices

    async def list_processes(self, executor: CommandExecutor) -> List[AcceleratorProcess]:
        result = await executor.execute(PROCESSES_COMMAND)
        processes: List[AcceleratorProcess] = []
        if result.success:
            processes = self.parse_processes_json(result.stdout)
        if not processes:
            text = await executor.execute(PROCESSES_TEXT_COMMAND)
            if text.success:
                processes = self.parse_processes_text(text.stdout)
        return await self._with_command_lines(executor, processes)

    def parse_processes_json(self, output: str) -> List[AcceleratorProcess]:
        """Parse ``{"system": {"PID123": "name, gpus, vram, sdma, cu"}}``."""
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.debug("rocm-smi process output is not JSON, falling back to text parsing")
            return []
        if not isinstance(data, dict):
            return []

        processes = []
        for section in data.values():
            if not isinstance(section, dict):
                continue
            for key, value in section.items():
                match = _PID_KEY.fullmatch(key.strip())
                if not match:
                    continue
                fields = [field.strip() for field in str(value).split(",")]
                processes.append(AcceleratorProcess(
                    pid=int(match.group(1)),
                    name=fields[0] if fields and fields[0] else "",
                    memory_used=parse_int(fields[2]) if len(fields) > 2 else None,
                    vendor=self.vendor,
                ))
        return processes

    def parse_processes_text(self, output: str) -> List[AcceleratorProcess]:
        processes: Dict[int, AcceleratorProcess] = {}
        for line in output.splitlines():
            row = _PID_TABLE_ROW.match(line)
            if row:
                pid = int(row.group(1))
                processes[pid] = AcceleratorProcess(
                    pid=pid,
                    name=row.group(2),
                    memory_used=int(row.group(4)),
                    vendor=self.vendor,
                )
                continue
            match = _PID_KEY.search(line)
            if match and int(match.group(1)) not in processes:
                pid = int(match.group(1))
                processes[pid] = AcceleratorProcess(pid=pid, vendor=self.vendor)
        return list(processes.values())
