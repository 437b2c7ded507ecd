"""Keyword-based classification of execution failures."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import ErrorKind, ErrorRecord, ExecutionResult, RETRYABLE_KINDS

logger = logging.getLogger(__name__)

# Ordered: the first group with a matching keyword wins.
DEFAULT_PATTERNS: List[Tuple[ErrorKind, List[str]]] = [
    (ErrorKind.CONNECTION_REFUSED, ["econnrefused", "connection refused", "connection reset"]),
    (ErrorKind.TIMEOUT, ["etimedout", "timeout", "timed out"]),
    (ErrorKind.PERMISSION_DENIED, ["permission denied", "eacces", "access denied"]),
    (ErrorKind.COMMAND_NOT_FOUND, ["command not found", "enoent", "no such file or directory"]),
    (ErrorKind.NETWORK, ["network", "econnreset", "enotfound", "econnaborted", "host unreachable",
                         "no route to host", "name or service not known"]),
    (ErrorKind.AUTHENTICATION_FAILED, ["authentication failed", "auth failed", "login failed",
                                       "invalid credentials"]),
    (ErrorKind.TEMPORARY, ["temporary", "temporarily", "try again later"]),
]


class ErrorClassifier:
    """Maps raw failures onto the closed ``ErrorKind`` taxonomy.

    Classification is a pure function of the extracted message text and the
    pattern table.
    """

    def __init__(self, patterns: Optional[Iterable[Tuple[ErrorKind, List[str]]]] = None):
        source = DEFAULT_PATTERNS if patterns is None else patterns
        self._patterns: List[Tuple[ErrorKind, List[str]]] = [
            (ErrorKind(kind), [keyword.lower() for keyword in keywords]) for kind, keywords in source
        ]

    @property
    def patterns(self) -> Dict[ErrorKind, List[str]]:
        return {kind: list(keywords) for kind, keywords in self._patterns}

    @staticmethod
    def extract_message(error: Any) -> str:
        """Pull a human readable message out of whatever failed."""
        if error is None:
            return ""
        if isinstance(error, str):
            return error
        if isinstance(error, ExecutionResult):
            if error.success:
                return ""
            return error.error or error.stderr or error.stdout or f"exit code {error.exit_code}"
        if isinstance(error, ErrorRecord):
            return error.message
        if isinstance(error, BaseException):
            return str(error) or type(error).__name__
        if isinstance(error, dict):
            for field in ("message", "stderr", "error"):
                if error.get(field):
                    return str(error[field])
            return str(error)
        for field in ("message", "stderr", "error"):
            value = getattr(error, field, None)
            if value:
                return str(value)
        return str(error)

    def classify(self, error: Any) -> ErrorKind:
        message = self.extract_message(error).lower()
        if not message:
            return ErrorKind.UNKNOWN
        for kind, keywords in self._patterns:
            if any(keyword in message for keyword in keywords):
                return kind
        return ErrorKind.UNKNOWN

    def is_retryable(self, error: Any) -> bool:
        if isinstance(error, ExecutionResult) and error.success:
            return False
        return self.classify(error) in RETRYABLE_KINDS

    def record(self, error: Any, context: Optional[Dict[str, Any]] = None) -> ErrorRecord:
        """Build an ``ErrorRecord`` for ``error``."""
        return ErrorRecord(
            kind=self.classify(error),
            message=self.extract_message(error),
            context=context or {},
        )

    def add_pattern(self, kind: ErrorKind, keywords: Iterable[str]) -> None:
        """Add keywords to the group for ``kind``, appending the group if new."""
        kind = ErrorKind(kind)
        new_keywords = [keyword.lower() for keyword in keywords]
        for existing_kind, existing in self._patterns:
            if existing_kind == kind:
                existing.extend(k for k in new_keywords if k not in existing)
                return
        self._patterns.append((kind, new_keywords))

    def remove_pattern(self, kind: ErrorKind) -> bool:
        kind = ErrorKind(kind)
        before = len(self._patterns)
        self._patterns = [(k, keywords) for k, keywords in self._patterns if k != kind]
        return len(self._patterns) != before
