"""Host system information: OS, CPU, memory and disks.

Everything is read through plain shell tools so it works the same on local
and remote hosts. Output that cannot be parsed leaves the corresponding part
of the snapshot at its empty default rather than failing the whole query.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from ..execution.base import CommandExecutor
from ..models import CPUInfo, DiskInfo, MemoryInfo, OSInfo, SystemInfo
from ..utils.parsing import non_empty_lines, parse_float, parse_int

logger = logging.getLogger(__name__)

OS_RELEASE_COMMAND = "cat /etc/os-release 2>/dev/null || cat /etc/redhat-release 2>/dev/null"
UNAME_COMMAND = "uname -n -r -m"
CPU_COMMAND = "lscpu"
MEMORY_COMMAND = "free -b"
DISK_COMMAND = "df -B1 -P 2>/dev/null"

# Pseudo filesystems that never hold model weights or logs
_SKIPPED_FILESYSTEMS = ("tmpfs", "devtmpfs", "overlay", "shm", "udev", "squashfs", "none")


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines, dropping quotes."""
    values = {}
    for line in non_empty_lines(text):
        if "=" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        values[key.strip().upper()] = value.strip().strip("\"'")
    return values


def detect_distribution(text: str) -> str:
    """Classify a host as ``ubuntu``, ``centos`` or generic ``linux``."""
    lowered = text.lower()
    if "ubuntu" in lowered:
        return "ubuntu"
    if any(marker in lowered for marker in ("centos", "red hat", "rhel", "rocky", "almalinux")):
        return "centos"
    return "linux"


def parse_os(os_release: str, uname: str = "") -> OSInfo:
    release = parse_os_release(os_release)
    lines = non_empty_lines(os_release)
    name = release.get("PRETTY_NAME") or release.get("NAME")
    if not name and lines and "=" not in lines[0]:
        # /etc/redhat-release is a single free-text line
        name = lines[0]

    info = OSInfo(
        distribution=detect_distribution(os_release),
        name=name or "Unknown",
        version=release.get("VERSION_ID"),
    )
    parts = uname.split()
    if len(parts) >= 3:
        info.hostname, info.kernel, info.arch = parts[0], parts[1], parts[2]
    return info


def parse_lscpu(text: str) -> CPUInfo:
    fields = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()

    logical = parse_int(fields.get("CPU(s)")) or 0
    per_socket = parse_int(fields.get("Core(s) per socket"))
    sockets = parse_int(fields.get("Socket(s)"))
    cores = per_socket * sockets if per_socket and sockets else logical

    return CPUInfo(
        model=fields.get("Model name") or "Unknown CPU",
        cores=cores,
        threads=logical,
        arch=fields.get("Architecture"),
        frequency_mhz=parse_float(fields.get("CPU MHz")),
        max_frequency_mhz=parse_float(fields.get("CPU max MHz")),
    )


def parse_free(text: str) -> MemoryInfo:
    """Parse ``free -b``.

    Newer procps prints an ``available`` column; older releases print
    ``buffers`` and ``cached`` instead, which then count as available.
    """
    lines = [line.split() for line in text.splitlines() if line.strip()]
    header = next((line for line in lines if "total" in line), None)
    row = next((line for line in lines if line[0].lower() == "mem:"), None)
    if header is None or row is None:
        return MemoryInfo()

    values: Dict[str, int] = {}
    for name, raw in zip(header, row[1:]):
        if raw.isdigit():
            values[name] = int(raw)

    total = values.get("total", 0)
    free = values.get("free", 0)
    if "available" in values:
        available = values["available"]
    else:
        available = free + values.get("buffers", 0) + values.get("cached", 0) + values.get("buff/cache", 0)
    used = max(0, total - available) if total else values.get("used", 0)
    return MemoryInfo(total=total, used=used, free=free, available=available)


def parse_df(text: str) -> List[DiskInfo]:
    """Parse POSIX ``df -B1 -P`` output, skipping pseudo filesystems."""
    disks = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 6 or not all(part.isdigit() for part in parts[1:4]):
            continue
        device = parts[0]
        if any(marker in device for marker in _SKIPPED_FILESYSTEMS):
            continue
        total = int(parts[1])
        if total <= 0:
            continue
        disks.append(DiskInfo(
            device=device,
            mount=" ".join(parts[5:]),
            total=total,
            used=int(parts[2]),
            free=int(parts[3]),
        ))
    return disks


class SystemInfoService:
    """Collects a ``SystemInfo`` snapshot from any executor."""

    async def collect(self, executor: CommandExecutor, host_key: Optional[str] = None) -> SystemInfo:
        os_release, uname, cpu, memory, disks = await asyncio.gather(
            executor.execute(OS_RELEASE_COMMAND),
            executor.execute(UNAME_COMMAND),
            executor.execute(CPU_COMMAND),
            executor.execute(MEMORY_COMMAND),
            executor.execute(DISK_COMMAND),
        )
        where = f" on {host_key}" if host_key else ""

        info = SystemInfo(os=parse_os(
            os_release.stdout if os_release.success else "",
            uname.stdout if uname.success else "",
        ))
        if cpu.success:
            info.cpu = parse_lscpu(cpu.stdout)
        else:
            logger.warning(f"lscpu failed{where}: {cpu.stderr.strip()}")
        if memory.success:
            info.memory = parse_free(memory.stdout)
        else:
            logger.warning(f"free failed{where}: {memory.stderr.strip()}")
        if disks.success:
            info.disks = parse_df(disks.stdout)
        else:
            logger.warning(f"df failed{where}: {disks.stderr.strip()}")
        return info
