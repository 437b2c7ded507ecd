"""Shared helpers."""

from .logging import setup_logging, JSONFormatter
from .parsing import parse_int, parse_float, parse_pid_list, non_empty_lines

__all__ = [
    "setup_logging",
    "JSONFormatter",
    "parse_int",
    "parse_float",
    "parse_pid_list",
    "non_empty_lines",
]
