"""Matching OS processes back to the service that was started.

A service launched through ``bash -c``/``conda run``/``nohup`` leaves no
reliable process handle, so processes are recognised from their command
lines, their ancestry and their process group instead. All heuristics live
here so the lifecycle state machine does not depend on them directly.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from ..execution.base import CommandExecutor
from ..models import AcceleratorProcess
from ..utils.parsing import parse_pid_list
from .commands import CommandSignature

logger = logging.getLogger(__name__)

SNAPSHOT_COMMAND = "ps -eo pid=,ppid=,pgid=,args="

_ANY_PORT = re.compile(r"--(?:server-)?port(?:=|\s+)\d+")


@dataclass(frozen=True)
class ProcessEntry:
    """One line of a process table snapshot."""
    pid: int
    ppid: int
    pgid: int
    args: str


def parse_process_table(output: str) -> List[ProcessEntry]:
    entries = []
    for line in output.splitlines():
        parts = line.strip().split(None, 3)
        if len(parts) < 4 or not all(part.isdigit() for part in parts[:3]):
            continue
        entries.append(ProcessEntry(pid=int(parts[0]), ppid=int(parts[1]), pgid=int(parts[2]), args=parts[3]))
    return entries


def port_pattern(port: int) -> "re.Pattern[str]":
    return re.compile(rf"--(?:server-)?port(?:=|\s+){port}(?!\d)")


def contains_token(text: str, needle: str) -> bool:
    """Whether ``needle`` appears in ``text`` as a whole word or path component.

    ``server.py`` matches ``python /srv/server.py`` but not ``python my_server.py``;
    a trailing ``.`` is allowed so ``vllm`` still matches ``-m vllm.entrypoints``.
    """
    if not needle:
        return False
    return re.search(rf"(?:^|[\s/=\"']){re.escape(needle)}(?=$|[\s.\"'])", text) is not None


class ProcessMatcher:
    """Probes and heuristics for finding a service's processes on a host."""

    async def snapshot(self, executor: CommandExecutor) -> List[ProcessEntry]:
        result = await executor.execute(SNAPSHOT_COMMAND)
        if not result.success:
            logger.warning(f"Process snapshot failed: {result.stderr.strip()}")
            return []
        return parse_process_table(result.stdout)

    async def is_port_listening(self, executor: CommandExecutor, port: int) -> bool:
        pattern = f"':{int(port)}([^0-9]|$)'"
        result = await executor.execute(
            f"ss -tuln 2>/dev/null | grep -E {pattern} || "
            f"netstat -tuln 2>/dev/null | grep -E {pattern} || "
            f"lsof -nP -iTCP:{int(port)} -sTCP:LISTEN 2>/dev/null"
        )
        return result.success and bool(result.stdout.strip())

    async def pids_on_port(self, executor: CommandExecutor, port: int) -> List[int]:
        result = await executor.execute(
            f"lsof -ti :{int(port)} 2>/dev/null || fuser -n tcp {int(port)} 2>/dev/null"
        )
        return parse_pid_list(result.stdout)

    def matches_signature(self, args: str, signature: CommandSignature) -> bool:
        """Whether a command line belongs to the service described by ``signature``."""
        if not contains_token(args, signature.keyword):
            return False
        if signature.port is not None and not port_pattern(signature.port).search(args):
            return False
        return True

    def find_service_processes(self, entries: Iterable[ProcessEntry],
                               signature: CommandSignature) -> List[ProcessEntry]:
        matches = [entry for entry in entries if self.matches_signature(entry.args, signature)]
        return sorted(matches, key=lambda entry: entry.pid)

    def find_by_substring(self, entries: Iterable[ProcessEntry], needle: str,
                          port: Optional[int] = None) -> List[ProcessEntry]:
        pattern = port_pattern(port) if port is not None else None
        return [
            entry for entry in entries
            if contains_token(entry.args, needle) and (pattern is None or pattern.search(entry.args))
        ]

    def related_pids(self, entries: Iterable[ProcessEntry], roots: Iterable[int]) -> Set[int]:
        """``roots`` plus every descendant and every process sharing a root's group."""
        entries = list(entries)
        roots = {pid for pid in roots if pid and pid > 1}
        by_pid: Dict[int, ProcessEntry] = {entry.pid: entry for entry in entries}

        groups = {by_pid[pid].pgid for pid in roots if pid in by_pid and by_pid[pid].pgid > 1}
        related = set(roots)
        related.update(entry.pid for entry in entries if entry.pgid in groups)

        children: Dict[int, List[int]] = {}
        for entry in entries:
            children.setdefault(entry.ppid, []).append(entry.pid)
        stack = list(related)
        while stack:
            for child in children.get(stack.pop(), []):
                if child not in related:
                    related.add(child)
                    stack.append(child)
        return related

    def references_service(self, process: AcceleratorProcess, signature: CommandSignature) -> bool:
        """Whether an accelerator process still points at the service after a stop."""
        text = f"{process.name} {process.command}"
        if signature.model_path and contains_token(text, signature.model_path):
            return True
        if signature.framework and signature.framework in text.lower():
            # Spare servers of the same framework that listen on another port
            if signature.port is None or not _ANY_PORT.search(text) or port_pattern(signature.port).search(text):
                return True
        return self.matches_signature(text, signature)
