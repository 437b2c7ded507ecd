"""Helpers for parsing shell tool output.

Vendor tools print ``[N/A]``, ``N/A`` or ``[Not Supported]`` for missing
values; all of them parse to ``None``.
"""

import re
from typing import List, Optional

_MISSING = {"", "n/a", "[n/a]", "[not supported]", "not supported", "none", "-"}
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if value.lower() in _MISSING:
        return None
    return value


def parse_float(value: Optional[str]) -> Optional[float]:
    """Parse the first number in ``value``, ignoring units."""
    value = _clean(value)
    if value is None:
        return None
    match = _NUMBER.search(value)
    if not match:
        return None
    return float(match.group(0))


def parse_int(value: Optional[str]) -> Optional[int]:
    number = parse_float(value)
    return int(number) if number is not None else None


def non_empty_lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_pid_list(text: str) -> List[int]:
    """Parse whitespace separated pids, skipping anything that is not a pid."""
    pids = []
    for token in text.split():
        if token.isdigit():
            pid = int(token)
            if pid > 0 and pid not in pids:
                pids.append(pid)
    return pids


def mib_to_bytes(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value * 1024 * 1024)
