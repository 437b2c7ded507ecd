"""Publish/subscribe fan-out of classified errors."""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from ..constants import ERROR_HISTORY_SIZE, NOTIFICATION_QUEUE_SIZE
from ..models import ErrorKind, ErrorRecord
from .classifier import ErrorClassifier

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[ErrorRecord], None]


class ErrorSubscriber(ABC):
    """Receives every record published on an ``ErrorBus``."""

    @abstractmethod
    def on_error(self, record: ErrorRecord) -> None:
        pass


class ErrorBus:
    """Synchronous multi-subscriber publisher.

    A subscriber that raises is logged and skipped; the remaining subscribers
    and the publisher are unaffected.
    """

    def __init__(self):
        self._subscribers: List[ErrorCallback] = []

    def subscribe(self, subscriber: Union[ErrorSubscriber, ErrorCallback]) -> Callable[[], None]:
        """Register ``subscriber`` and return a function that unsubscribes it."""
        if isinstance(subscriber, ErrorSubscriber):
            callback = subscriber.on_error
        elif callable(subscriber):
            callback = subscriber
        else:
            raise TypeError("Subscriber must implement on_error or be callable")

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, record: ErrorRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Error subscriber {callback!r} failed: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def clear(self) -> None:
        self._subscribers.clear()


class ErrorLogSubscriber(ErrorSubscriber):
    """Logs published errors and keeps a bounded history for inspection."""

    def __init__(self, max_errors: int = ERROR_HISTORY_SIZE):
        self._errors: Deque[ErrorRecord] = deque(maxlen=max_errors)

    def on_error(self, record: ErrorRecord) -> None:
        self._errors.append(record)
        logger.error(f"[{record.kind.value}] {record.message}"
                     + (" (retryable)" if record.retryable else ""))

    def get_errors(self, kind: Optional[ErrorKind] = None) -> List[ErrorRecord]:
        if kind is None:
            return list(self._errors)
        return [record for record in self._errors if record.kind == kind]

    def clear_errors(self) -> None:
        self._errors.clear()

    def get_error_stats(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for record in self._errors:
            by_kind[record.kind.value] = by_kind.get(record.kind.value, 0) + 1
        return {
            "total": len(self._errors),
            "by_kind": by_kind,
            "retryable": sum(1 for record in self._errors if record.retryable),
        }


class ErrorNotifier(ErrorSubscriber):
    """Forwards records to a notification sink such as a UI channel.

    While no sink is attached, records are queued (oldest dropped first) and
    flushed when one is attached.
    """

    def __init__(self, sink: Optional[ErrorCallback] = None, max_queue: int = NOTIFICATION_QUEUE_SIZE):
        self._sink = sink
        self._queue: Deque[ErrorRecord] = deque(maxlen=max_queue)
        self.enabled = True

    def on_error(self, record: ErrorRecord) -> None:
        if not self.enabled:
            return
        if self._sink is None:
            self._queue.append(record)
            return
        self._sink(record)

    def set_sink(self, sink: Optional[ErrorCallback]) -> None:
        self._sink = sink
        if sink is not None:
            self.flush()

    def flush(self) -> int:
        """Deliver queued records to the sink; returns how many were sent."""
        if self._sink is None:
            return 0
        sent = 0
        while self._queue:
            record = self._queue.popleft()
            try:
                self._sink(record)
                sent += 1
            except Exception as e:
                logger.error(f"Error notification sink failed: {e}")
        return sent

    @property
    def queued(self) -> int:
        return len(self._queue)

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False


class ErrorReporter:
    """Classifies raw failures and publishes them on a bus."""

    def __init__(self, classifier: Optional[ErrorClassifier] = None, bus: Optional[ErrorBus] = None):
        self.classifier = classifier or ErrorClassifier()
        self.bus = bus or ErrorBus()

    def report(self, error: Any, context: Optional[Dict[str, Any]] = None) -> ErrorRecord:
        record = self.classifier.record(error, context)
        self.bus.publish(record)
        return record
