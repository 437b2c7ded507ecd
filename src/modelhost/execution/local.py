"""Local execution target."""

import asyncio
import logging
import os
import time
from typing import Optional, Tuple

import psutil

from ..config import ExecutionSettings
from ..models import ConnectResult, ExecutionOptions, ExecutionResult, HostIdentity
from .base import ExecutionTarget

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> Tuple[bytes, bool]:
    """Drain ``stream`` to EOF, keeping at most ``limit`` bytes."""
    data = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        remaining = limit - len(data)
        if remaining > 0:
            data.extend(chunk[:remaining])
        if len(chunk) > remaining:
            truncated = True
    return bytes(data), truncated


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and every descendant, ignoring processes that already exited."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not kill local process {proc.pid}: {e}")


class LocalTarget(ExecutionTarget):
    """Runs commands through the local shell with a fixed locale."""

    def __init__(self, settings: Optional[ExecutionSettings] = None):
        super().__init__(HostIdentity.local())
        self.settings = settings or ExecutionSettings()

    async def connect(self) -> ConnectResult:
        return ConnectResult(success=True, message="Local target is always available")

    async def disconnect(self) -> None:
        self._notify_closed()

    def is_connected(self) -> bool:
        return True

    def _build_env(self) -> dict:
        env = os.environ.copy()
        env["LANG"] = self.settings.locale
        env["LC_ALL"] = self.settings.locale
        return env

    async def execute(self, command: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        options = options or ExecutionOptions()
        timeout = options.timeout if options.timeout is not None else self.settings.command_timeout
        limit = options.max_output_bytes or self.settings.max_output_bytes
        started = time.monotonic()

        def elapsed() -> float:
            return (time.monotonic() - started) * 1000

        logger.debug(f"Executing locally: {command}")
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn local command: {e}")
            return ExecutionResult.failure(f"Failed to spawn command: {e}", duration_ms=elapsed())

        collect = asyncio.gather(
            _read_capped(process.stdout, limit),
            _read_capped(process.stderr, limit),
            process.wait(),
        )
        try:
            if timeout:
                (stdout, out_cut), (stderr, err_cut), exit_code = await asyncio.wait_for(collect, timeout)
            else:
                (stdout, out_cut), (stderr, err_cut), exit_code = await collect
        except asyncio.TimeoutError:
            logger.warning(f"Local command timed out after {timeout}s: {command}")
            kill_process_tree(process.pid)
            return ExecutionResult(
                success=False,
                exit_code=-1,
                stderr=f"Command timed out after {timeout}s",
                error=f"Command timed out after {timeout}s",
                timed_out=True,
                duration_ms=elapsed(),
            )
        except asyncio.CancelledError:
            kill_process_tree(process.pid)
            raise

        if out_cut or err_cut:
            logger.warning(f"Output of local command truncated to {limit} bytes: {command}")

        return ExecutionResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=elapsed(),
        )
