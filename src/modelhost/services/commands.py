"""Parsing of user-supplied service start commands.

Users paste launch commands the way they would type them in a terminal,
with environment exports, ``conda run``/``uv run`` prefixes, ``nohup`` and
output redirection. The lifecycle manager needs the bare command (the
"clean command") plus a few facts extracted from it.
"""

import re
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..constants import FRAMEWORKS

_VISIBILITY = re.compile(r"\b(CUDA_VISIBLE_DEVICES|HIP_VISIBLE_DEVICES|ROCR_VISIBLE_DEVICES)=[\"']?(\d+(?:,\d+)*)")

_EXPORT = re.compile(r"export\s+[A-Za-z_][A-Za-z0-9_]*=[^&;]*(?:&&|;)\s*")
_LEADING_ASSIGNMENTS = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*=\S*\s+)+")
_CONDA_RUN = re.compile(r"conda\s+run\s+(?:-n|--name)\s+\S+\s+(?:--no-capture-output\s+)?")
_UV_RUN = re.compile(r"uv\s+run\s+(?:--with\s+\S+\s+)*")
_NOHUP = re.compile(r"^nohup\s+")
_REDIRECT = re.compile(r"\s*(?:\d?>>?|&>)\s*\S+(?:\s*2>&1)?")
_STDERR_MERGE = re.compile(r"\s*2>&1")
_BACKGROUND = re.compile(r"\s*&\s*$")

_PORT = re.compile(r"--(?:server-)?port(?:=|\s+)(\d+)")
_MODEL_PATHS = [
    re.compile(r"vllm\s+serve\s+([^\s-]\S*)"),
    re.compile(r"lmdeploy\s+serve\s+api_server\s+([^\s-]\S*)"),
    re.compile(r"--model(?:-path)?(?:=|\s+)(\S+)"),
]
_INTERPRETERS = re.compile(r"^(?:python\d?(?:\.\d+)?|bash|sh)$")


@dataclass(frozen=True)
class VisibilityDirective:
    """An accelerator visibility variable such as ``CUDA_VISIBLE_DEVICES=0,1``."""
    variable: str
    devices: str

    def as_prefix(self) -> str:
        return f"export {self.variable}={self.devices} && "


@dataclass(frozen=True)
class CommandSignature:
    """Facts extracted from a start command, used to recognise the running service."""
    original: str
    clean: str
    port: Optional[int] = None
    model_path: Optional[str] = None
    framework: Optional[str] = None
    visibility: Optional[VisibilityDirective] = None
    script: Optional[str] = None

    @property
    def keyword(self) -> str:
        """Most specific string expected in the service's command line."""
        return self.model_path or self.framework or self.script or self.clean

    @property
    def framework_keyword(self) -> str:
        """Keyword for the broad pattern-matching kill step."""
        return self.framework or self.script or self.clean


def clean_command(command: str) -> str:
    """Strip exports, interpreter-run prefixes, nohup and redirection from ``command``."""
    clean = command.strip()
    clean = _BACKGROUND.sub("", clean)
    clean = _REDIRECT.sub("", clean)
    clean = _STDERR_MERGE.sub("", clean)
    clean = _BACKGROUND.sub("", clean)

    previous = None
    while previous != clean:
        previous = clean
        clean = _EXPORT.sub("", clean).strip()
        clean = _NOHUP.sub("", clean)
        clean = _LEADING_ASSIGNMENTS.sub("", clean)
        clean = _CONDA_RUN.sub("", clean)
        clean = _UV_RUN.sub("", clean)
    return " ".join(clean.split())


def extract_port(command: str) -> Optional[int]:
    match = _PORT.search(command)
    return int(match.group(1)) if match else None


def extract_visibility(command: str) -> Optional[VisibilityDirective]:
    match = _VISIBILITY.search(command)
    if not match:
        return None
    return VisibilityDirective(variable=match.group(1), devices=match.group(2))


def extract_model_path(command: str) -> Optional[str]:
    for pattern in _MODEL_PATHS:
        match = pattern.search(command)
        if match:
            return match.group(1).strip("'\"")
    return None


def detect_framework(command: str, frameworks: Sequence[str] = FRAMEWORKS) -> Optional[str]:
    lowered = command.lower()
    for framework in frameworks:
        if framework.lower() in lowered:
            return framework
    return None


def _tokens(command: str) -> List[str]:
    try:
        return shlex.split(command)
    except ValueError:
        return command.split()


def extract_script(command: str) -> Optional[str]:
    """The script or module a command runs, e.g. ``server.py`` or ``app.main``."""
    tokens = _tokens(command)
    for index, token in enumerate(tokens):
        if token == "-m" and index + 1 < len(tokens):
            return tokens[index + 1]
        if token.endswith(".py"):
            return token.rsplit("/", 1)[-1]
    for token in tokens:
        name = token.rsplit("/", 1)[-1]
        if not token.startswith("-") and not _INTERPRETERS.match(name):
            return name
    return None


def parse_start_command(command: str, frameworks: Sequence[str] = FRAMEWORKS) -> CommandSignature:
    clean = clean_command(command)
    return CommandSignature(
        original=command,
        clean=clean,
        port=extract_port(clean),
        model_path=extract_model_path(clean),
        framework=detect_framework(clean, frameworks),
        visibility=extract_visibility(command),
        script=extract_script(clean),
    )


def compose_launch_command(runner: str, log_path: str, visibility: Optional[VisibilityDirective] = None,
                           login_shell: bool = False) -> str:
    """Wrap ``runner`` so it runs detached with output going to ``log_path``."""
    prefix = visibility.as_prefix() if visibility else ""
    inner = f"{prefix}nohup {runner} > {shlex.quote(log_path)} 2>&1 < /dev/null &"
    shell = "bash -l -c" if login_shell else "bash -c"
    return f"{shell} {shlex.quote(inner)}"
