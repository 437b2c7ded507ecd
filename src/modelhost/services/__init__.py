"""Model-serving service management: command parsing, tool lookup and lifecycle."""

from .commands import (
    CommandSignature,
    VisibilityDirective,
    clean_command,
    compose_launch_command,
    parse_start_command,
)
from .discovery import ToolLocator, ToolSpec
from .environments import (
    EnvironmentAdapter,
    SystemEnvironment,
    CondaEnvironment,
    VenvEnvironment,
    UvEnvironment,
    get_environment_adapter,
)
from .matcher import ProcessEntry, ProcessMatcher
from .lifecycle import ServiceLifecycleManager, TRANSITIONS
from .system_info import SystemInfoService, detect_distribution, parse_df, parse_free, parse_lscpu, parse_os

__all__ = [
    "CommandSignature",
    "VisibilityDirective",
    "clean_command",
    "compose_launch_command",
    "parse_start_command",
    "ToolLocator",
    "ToolSpec",
    "EnvironmentAdapter",
    "SystemEnvironment",
    "CondaEnvironment",
    "VenvEnvironment",
    "UvEnvironment",
    "get_environment_adapter",
    "ProcessEntry",
    "ProcessMatcher",
    "ServiceLifecycleManager",
    "TRANSITIONS",
    "SystemInfoService",
    "detect_distribution",
    "parse_df",
    "parse_free",
    "parse_lscpu",
    "parse_os",
]
