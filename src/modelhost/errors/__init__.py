"""Error classification and fan-out."""

from .classifier import ErrorClassifier, DEFAULT_PATTERNS
from .bus import ErrorBus, ErrorSubscriber, ErrorLogSubscriber, ErrorNotifier, ErrorReporter

__all__ = [
    "ErrorClassifier",
    "DEFAULT_PATTERNS",
    "ErrorBus",
    "ErrorSubscriber",
    "ErrorLogSubscriber",
    "ErrorNotifier",
    "ErrorReporter",
]
