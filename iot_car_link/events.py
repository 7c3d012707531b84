"""Typed, thread-safe notification channels exposed to the application.

Producers (the MQTT network thread) and consumers (a UI or logging thread)
only meet inside a channel, behind its lock. Each channel keeps the latest
value and fans it out to the observers attached at publish time; there is no
history replay and no buffering beyond the latest value.

Two ways to consume a channel:

- ``subscribe(callback)``: the callback runs on the producer's thread.
- ``observe()``: returns a :class:`Mailbox` that a consumer thread drains at
  its own pace. The mailbox keeps only the most recent unseen value.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar

from .core.models import ConnectionState, DeviceStatus, TelemetryReading

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Observer = Callable[[T], None]


class ErrorKind(str, Enum):
    CONNECT_FAILURE = "connect_failure"
    CONNECTION_LOST = "connection_lost"
    MALFORMED_PAYLOAD = "malformed_payload"
    PUBLISH_FAILURE = "publish_failure"


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    kind: ErrorKind
    message: str
    operation: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Mailbox(Generic[T]):
    """Single-slot, most-recent-wins mailbox fed by a channel."""

    def __init__(self, detach: Callable[["Mailbox[T]"], None]) -> None:
        self._detach = detach
        self._condition = threading.Condition()
        self._value: Optional[T] = None
        self._has_value = False
        self._closed = False

    def _put(self, value: T) -> None:
        with self._condition:
            if self._closed:
                return
            self._value = value
            self._has_value = True
            self._condition.notify_all()

    def poll(self) -> Optional[T]:
        """Return the pending value without blocking, or None."""
        with self._condition:
            return self._take()

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Block until a value arrives; None on timeout or after ``close()``."""
        with self._condition:
            self._condition.wait_for(
                lambda: self._has_value or self._closed, timeout=timeout
            )
            return self._take()

    def close(self) -> None:
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._condition.notify_all()
        self._detach(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def _take(self) -> Optional[T]:
        if not self._has_value:
            return None
        value = self._value
        self._value = None
        self._has_value = False
        return value


class LatestValueChannel(Generic[T]):
    """Holds the latest published value and notifies current observers."""

    def __init__(self, name: str, initial: Optional[T] = None) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._latest: Optional[T] = initial
        self._observers: List[Observer[T]] = []
        self._mailboxes: List[Mailbox[T]] = []

    @property
    def latest(self) -> Optional[T]:
        with self._lock:
            return self._latest

    def publish(self, value: T) -> None:
        with self._lock:
            self._latest = value
            observers = list(self._observers)
            mailboxes = list(self._mailboxes)

        for mailbox in mailboxes:
            mailbox._put(value)

        for observer in observers:
            try:
                observer(value)
            except Exception:
                LOGGER.exception("Observer for %s channel raised", self.name)

    def subscribe(self, observer: Observer[T]) -> Callable[[], None]:
        """Attach ``observer``; returns a callable that detaches it."""
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._observers.remove(observer)
                except ValueError:
                    pass

        return _unsubscribe

    def observe(self) -> Mailbox[T]:
        mailbox: Mailbox[T] = Mailbox(self._remove_mailbox)
        with self._lock:
            self._mailboxes.append(mailbox)
        return mailbox

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers) + len(self._mailboxes)

    def _remove_mailbox(self, mailbox: Mailbox[T]) -> None:
        with self._lock:
            try:
                self._mailboxes.remove(mailbox)
            except ValueError:
                pass


class EventSink:
    """The four notification channels of a car link."""

    def __init__(self) -> None:
        self.connection_state: LatestValueChannel[ConnectionState] = (
            LatestValueChannel("connection_state", ConnectionState.DISCONNECTED)
        )
        self.telemetry: LatestValueChannel[TelemetryReading] = LatestValueChannel(
            "telemetry", TelemetryReading.empty()
        )
        self.device_status: LatestValueChannel[DeviceStatus] = LatestValueChannel(
            "device_status", DeviceStatus.unknown()
        )
        self.errors: LatestValueChannel[ErrorEvent] = LatestValueChannel("errors")

    def report_error(self, kind: ErrorKind, message: str, operation: str) -> ErrorEvent:
        event = ErrorEvent(kind=kind, message=message, operation=operation)
        self.errors.publish(event)
        return event
