"""Locating command-line tools such as conda on a host.

Tools installed by user-level installers are often missing from the PATH of
a non-interactive remote shell, so lookup falls back through a fixed ladder:

1. the default shell PATH
2. the PATH after sourcing the user's shell profiles
3. a list of conventional install locations
4. install roots inferred from sibling ``envs`` directories

The first hit is cached per host.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from ..exceptions import ToolNotFoundError
from ..execution.base import CommandExecutor

logger = logging.getLogger(__name__)

PROFILES = ("~/.bashrc", "~/.bash_profile", "~/.profile", "~/.zshrc")

CONDA_ROOTS = (
    "~/miniconda3", "~/anaconda3", "~/miniforge3", "~/mambaforge", "~/.conda",
    "/opt/miniconda3", "/opt/anaconda3", "/opt/miniforge3", "/opt/conda",
    "/usr/local/conda", "/usr/local/miniconda3", "/usr/local/anaconda3",
    "~/miniconda", "~/anaconda", "/opt/miniconda", "/opt/anaconda",
)


@dataclass(frozen=True)
class ToolSpec:
    """Where to look for one tool beyond the PATH."""
    name: str
    locations: Tuple[str, ...] = ()
    env_parents: Tuple[str, ...] = ()


DEFAULT_TOOLS: Dict[str, ToolSpec] = {
    "conda": ToolSpec(
        name="conda",
        locations=tuple(f"{root}/bin/conda" for root in CONDA_ROOTS),
        env_parents=("~", "/opt", "/usr/local"),
    ),
    "uv": ToolSpec(
        name="uv",
        locations=("~/.local/bin/uv", "~/.cargo/bin/uv", "/usr/local/bin/uv", "/opt/homebrew/bin/uv"),
    ),
    "python3": ToolSpec(
        name="python3",
        locations=("/usr/bin/python3", "/usr/local/bin/python3"),
    ),
}


def _shell_path(path: str) -> str:
    """Double-quote ``path`` for the shell, keeping a leading ``~`` expandable."""
    if path == "~" or path.startswith("~/"):
        path = "$HOME" + path[1:]
    return '"' + path.replace('"', '\\"') + '"'


def _first_absolute(output: str) -> Optional[str]:
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("/"):
            return line
    return None


class ToolLocator:
    """Finds absolute tool paths on hosts, caching successes per host."""

    def __init__(self, tools: Optional[Dict[str, ToolSpec]] = None, profiles: Sequence[str] = PROFILES):
        self.tools = dict(DEFAULT_TOOLS if tools is None else tools)
        self.profiles = tuple(profiles)
        self._cache: Dict[Tuple[str, str], str] = {}

    def _spec(self, tool: str) -> ToolSpec:
        return self.tools.get(tool) or ToolSpec(name=tool)

    async def locate(self, tool: str, host_key: str, executor: CommandExecutor) -> Optional[str]:
        cached = self._cache.get((host_key, tool))
        if cached:
            return cached

        spec = self._spec(tool)
        ladder = (
            ("path", self._from_path),
            ("profiles", self._from_profiles),
            ("locations", self._from_locations),
            ("env dirs", self._from_env_dirs),
        )
        for step, finder in ladder:
            path = await finder(spec, executor)
            if path:
                logger.info(f"Located {tool} on {host_key} at {path} (via {step})")
                self._cache[(host_key, tool)] = path
                return path
            logger.debug(f"{tool} not found on {host_key} via {step}")

        logger.warning(f"Could not locate {tool} on {host_key}")
        return None

    async def require(self, tool: str, host_key: str, executor: CommandExecutor) -> str:
        path = await self.locate(tool, host_key, executor)
        if not path:
            raise ToolNotFoundError(tool, host_key)
        return path

    def clear(self, host_key: Optional[str] = None) -> None:
        if host_key is None:
            self._cache.clear()
            return
        for key in [key for key in self._cache if key[0] == host_key]:
            del self._cache[key]

    async def _from_path(self, spec: ToolSpec, executor: CommandExecutor) -> Optional[str]:
        result = await executor.execute(f"command -v {spec.name}")
        return _first_absolute(result.stdout) if result.success else None

    async def _from_profiles(self, spec: ToolSpec, executor: CommandExecutor) -> Optional[str]:
        result = await executor.execute(f"bash -l -c 'which {spec.name}' 2>/dev/null")
        path = _first_absolute(result.stdout) if result.success else None
        if path:
            return path
        for profile in self.profiles:
            quoted = _shell_path(profile)
            result = await executor.execute(
                f"bash -c '[ -f {quoted} ] && source {quoted} >/dev/null 2>&1; which {spec.name}' 2>/dev/null"
            )
            path = _first_absolute(result.stdout) if result.success else None
            if path:
                return path
        return None

    async def _from_locations(self, spec: ToolSpec, executor: CommandExecutor) -> Optional[str]:
        if not spec.locations:
            return None
        candidates = " ".join(_shell_path(location) for location in spec.locations)
        result = await executor.execute(
            f'for p in {candidates}; do if [ -x "$p" ]; then echo "$p"; break; fi; done'
        )
        return _first_absolute(result.stdout)

    async def _from_env_dirs(self, spec: ToolSpec, executor: CommandExecutor) -> Optional[str]:
        if not spec.env_parents:
            return None
        globs = " ".join(f"{_shell_path(parent)}/*/envs" for parent in spec.env_parents)
        result = await executor.execute(
            f'for d in {globs}; do r="${{d%/envs}}"; '
            f'if [ -d "$d" ] && [ -x "$r/bin/{spec.name}" ]; then echo "$r/bin/{spec.name}"; break; fi; done'
        )
        return _first_absolute(result.stdout)
