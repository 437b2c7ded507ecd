"""Isolated Python environment adapters."""

import json
import logging
import shlex
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..exceptions import ConfigurationError
from ..execution.base import CommandExecutor
from ..models import EnvironmentInfo, EnvironmentType
from ..utils.parsing import non_empty_lines
from .discovery import ToolLocator

logger = logging.getLogger(__name__)

VENV_DIRS = ("~/.venv", "~/venv", "~/.virtualenvs/*", "~/venvs/*", "~/envs/*", "~/*/.venv")


def _probe_venvs_command(marker: Optional[str] = None) -> str:
    """Shell loop printing venv directories, optionally only those whose pyvenv.cfg has ``marker``."""
    globs = " ".join('"$HOME"' + pattern[1:] if pattern.startswith("~") else pattern for pattern in VENV_DIRS)
    check = '[ -x "$d/bin/python" ]'
    if marker:
        check += f' && grep -q "^{marker}" "$d/pyvenv.cfg" 2>/dev/null'
    return f'for d in {globs}; do if {check}; then echo "$d"; fi; done'


class EnvironmentAdapter(ABC):
    """Launches a clean command inside one kind of environment."""

    env_type: EnvironmentType
    login_shell = False

    @abstractmethod
    async def runner(self, clean_command: str, env_name: Optional[str], executor: CommandExecutor,
                     host_key: str) -> str:
        """The command that runs ``clean_command`` inside the environment."""
        pass

    @abstractmethod
    async def list_environments(self, executor: CommandExecutor, host_key: str) -> List[EnvironmentInfo]:
        pass


class SystemEnvironment(EnvironmentAdapter):
    """Runs the command as-is with the host's default interpreter."""

    env_type = EnvironmentType.SYSTEM

    def __init__(self, locator: ToolLocator):
        self.locator = locator

    async def runner(self, clean_command, env_name, executor, host_key) -> str:
        return clean_command

    async def list_environments(self, executor, host_key) -> List[EnvironmentInfo]:
        python = await self.locator.locate("python3", host_key, executor)
        if not python:
            return []
        return [EnvironmentInfo(name="system", path=python, type=self.env_type)]


class CondaEnvironment(EnvironmentAdapter):
    """Runs the command through ``conda run``, resolving conda's absolute path first."""

    env_type = EnvironmentType.CONDA
    login_shell = True

    def __init__(self, locator: ToolLocator):
        self.locator = locator

    async def runner(self, clean_command, env_name, executor, host_key) -> str:
        if not env_name:
            raise ConfigurationError("A conda environment name is required")
        conda = await self.locator.require("conda", host_key, executor)
        return f"{shlex.quote(conda)} run -n {shlex.quote(env_name)} --no-capture-output {clean_command}"

    async def list_environments(self, executor, host_key) -> List[EnvironmentInfo]:
        conda = await self.locator.locate("conda", host_key, executor)
        if not conda:
            return []
        result = await executor.execute(f"{shlex.quote(conda)} env list --json")
        if result.success:
            envs = self.parse_json(result.stdout)
            if envs:
                return envs
        result = await executor.execute(f"{shlex.quote(conda)} env list")
        if not result.success:
            logger.warning(f"conda env list failed on {host_key}: {result.stderr.strip()}")
            return []
        return self.parse_text(result.stdout)

    def parse_json(self, output: str) -> List[EnvironmentInfo]:
        try:
            paths = json.loads(output).get("envs", [])
        except (json.JSONDecodeError, AttributeError):
            return []
        envs = []
        for path in paths:
            if "/envs/" in path:
                name = path.rstrip("/").rsplit("/", 1)[-1]
            else:
                name = "base"
            envs.append(EnvironmentInfo(name=name, path=path, type=self.env_type))
        return envs

    def parse_text(self, output: str) -> List[EnvironmentInfo]:
        """Parse ``name [*] /path`` lines of ``conda env list``."""
        envs = []
        for line in non_empty_lines(output):
            if line.startswith("#"):
                continue
            parts = [part for part in line.split() if part != "*"]
            if len(parts) >= 2:
                envs.append(EnvironmentInfo(name=parts[0], path=parts[-1], type=self.env_type))
            elif len(parts) == 1 and parts[0].startswith("/"):
                name = parts[0].rstrip("/").rsplit("/", 1)[-1]
                envs.append(EnvironmentInfo(name=name, path=parts[0], type=self.env_type))
        return envs


class VenvEnvironment(EnvironmentAdapter):
    """A virtualenv directory; ``env_name`` is its path."""

    env_type = EnvironmentType.VENV
    marker: Optional[str] = None

    async def runner(self, clean_command, env_name, executor, host_key) -> str:
        if not env_name:
            raise ConfigurationError(f"A {self.env_type.value} environment path is required")
        env_dir = env_name.rstrip("/")
        quoted = shlex.quote(env_dir)
        return f"env VIRTUAL_ENV={quoted} PATH={quoted}/bin:\"$PATH\" {clean_command}"

    async def list_environments(self, executor, host_key) -> List[EnvironmentInfo]:
        result = await executor.execute(_probe_venvs_command(self.marker))
        envs = []
        for path in non_empty_lines(result.stdout):
            if not path.startswith("/"):
                continue
            name = path.rstrip("/").rsplit("/", 1)[-1]
            if name in (".venv", "venv"):
                name = path.rstrip("/").rsplit("/", 2)[-2] or name
            envs.append(EnvironmentInfo(name=name, path=path, type=self.env_type))
        return envs


class UvEnvironment(VenvEnvironment):
    """A uv-managed virtualenv; identified by the ``uv =`` line uv writes to pyvenv.cfg."""

    env_type = EnvironmentType.UV
    marker = "uv ="


def get_environment_adapter(env_type: EnvironmentType, locator: ToolLocator) -> EnvironmentAdapter:
    adapters: Dict[EnvironmentType, EnvironmentAdapter] = {
        EnvironmentType.SYSTEM: SystemEnvironment(locator),
        EnvironmentType.CONDA: CondaEnvironment(locator),
        EnvironmentType.VENV: VenvEnvironment(),
        EnvironmentType.UV: UvEnvironment(),
    }
    try:
        return adapters[EnvironmentType(env_type)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported environment type: {env_type}")
