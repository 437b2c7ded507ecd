"""Intel accelerator handler backed by sysfs and intel_gpu_top."""

import json
import logging
import re
from typing import Any, Dict, Iterator, List

from ..execution.base import CommandExecutor
from ..models import AcceleratorDevice, AcceleratorProcess, AcceleratorVendor
from ..utils.parsing import non_empty_lines
from .base import AcceleratorHandler

logger = logging.getLogger(__name__)

INTEL_PCI_VENDOR = "0x8086"

PROBE_COMMAND = "command -v intel_gpu_top"
DEVICES_COMMAND = (
    'for c in /sys/class/drm/card*; do '
    '[ -r "$c/device/vendor" ] && echo "$(basename "$c") $(cat "$c/device/vendor") '
    '$(cat "$c/device/device" 2>/dev/null)"; done'
)
# intel_gpu_top streams samples forever; take one sample and stop
PROCESSES_COMMAND = "timeout 3 intel_gpu_top -J -s 1000 2>/dev/null"

_CARD_NAME = re.compile(r"^card(\d+)$")


def iter_json_objects(text: str) -> Iterator[Any]:
    """Yield every complete JSON value in a stream of concatenated values.

    Handles both a JSON array and the comma-separated object stream older
    intel_gpu_top releases print; a truncated tail is ignored.
    """
    decoder = json.JSONDecoder()
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index] in " \t\r\n,[]":
            index += 1
        if index >= length:
            break
        try:
            value, index = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            return
        yield value


class IntelHandler(AcceleratorHandler):
    """Intel GPUs. Integrated parts share system memory, so memory fields stay empty."""

    vendor = AcceleratorVendor.INTEL

    async def is_available(self, executor: CommandExecutor) -> bool:
        result = await executor.execute(PROBE_COMMAND)
        return result.success and bool(result.stdout.strip())

    async def list_devices(self, executor: CommandExecutor) -> List[AcceleratorDevice]:
        result = await executor.execute(DEVICES_COMMAND)
        if not result.stdout.strip():
            return []
        return self.parse_devices(result.stdout)

    def parse_devices(self, output: str) -> List[AcceleratorDevice]:
        devices = []
        for line in non_empty_lines(output):
            parts = line.split()
            if len(parts) < 2:
                continue
            card = _CARD_NAME.match(parts[0])
            if not card or parts[1].lower() != INTEL_PCI_VENDOR:
                continue
            device_id = parts[2] if len(parts) > 2 else None
            devices.append(AcceleratorDevice(
                id=int(card.group(1)),
                vendor=self.vendor,
                name=f"Intel GPU ({device_id})" if device_id else "Intel GPU",
            ))
        return devices

    async def list_processes(self, executor: CommandExecutor) -> List[AcceleratorProcess]:
        result = await executor.execute(PROCESSES_COMMAND)
        # timeout(1) exits 124 after a successful sample, so judge by output only
        if not result.stdout.strip():
            return []
        processes = self.parse_processes(result.stdout)
        return await self._with_command_lines(executor, processes)

    def parse_processes(self, output: str) -> List[AcceleratorProcess]:
        processes: Dict[int, AcceleratorProcess] = {}
        try:
            for sample in iter_json_objects(output):
                if not isinstance(sample, dict):
                    continue
                clients = sample.get("clients") or {}
                if not isinstance(clients, dict):
                    continue
                for client in clients.values():
                    if not isinstance(client, dict):
                        continue
                    pid = str(client.get("pid", "")).strip()
                    if not pid.isdigit():
                        continue
                    processes[int(pid)] = AcceleratorProcess(
                        pid=int(pid),
                        name=str(client.get("name", "")),
                        vendor=self.vendor,
                    )
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not parse intel_gpu_top output: {e}")
            return []
        return list(processes.values())
