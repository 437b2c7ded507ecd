"""Shell-level process helpers shared by accelerator handlers and the lifecycle manager."""

import asyncio
import logging
from typing import Dict, Iterable, List

from ..execution.base import CommandExecutor
from .parsing import parse_pid_list

logger = logging.getLogger(__name__)


async def is_process_alive(executor: CommandExecutor, pid: int) -> bool:
    result = await executor.execute(f"ps -p {int(pid)} -o pid=")
    return result.success and str(int(pid)) in result.stdout.split()


async def send_signal(executor: CommandExecutor, pid: int, signal: int = 9) -> bool:
    """Send ``signal`` to ``pid``; True only if the kill command succeeded."""
    result = await executor.execute(f"kill -{int(signal)} {int(pid)}")
    if not result.success:
        logger.debug(f"kill -{signal} {pid} failed: {result.stderr.strip()}")
    return result.success


async def terminate_process(executor: CommandExecutor, pid: int, grace_period: float = 0.5) -> bool:
    """SIGTERM, wait ``grace_period``, SIGKILL if still alive.

    Returns True if the process is gone afterwards.
    """
    await send_signal(executor, pid, 15)
    if grace_period:
        await asyncio.sleep(grace_period)
    if not await is_process_alive(executor, pid):
        return True
    logger.debug(f"Process {pid} survived SIGTERM, sending SIGKILL")
    await send_signal(executor, pid, 9)
    return not await is_process_alive(executor, pid)


async def child_pids(executor: CommandExecutor, pid: int) -> List[int]:
    result = await executor.execute(f"pgrep -P {int(pid)}")
    if not result.success:
        return []
    return parse_pid_list(result.stdout)


async def command_lines(executor: CommandExecutor, pids: Iterable[int]) -> Dict[int, str]:
    """Full command line of each live pid, in one ``ps`` call."""
    pid_list = sorted({int(pid) for pid in pids})
    if not pid_list:
        return {}
    result = await executor.execute(f"ps -o pid=,args= -p {','.join(str(pid) for pid in pid_list)}")
    commands: Dict[int, str] = {}
    for line in result.stdout.splitlines():
        parts = line.strip().split(None, 1)
        if parts and parts[0].isdigit():
            commands[int(parts[0])] = parts[1] if len(parts) > 1 else ""
    return commands
