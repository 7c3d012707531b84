"""Outbound drive commands.

Commands are fire-and-forget: each one is published once at QoS 1 and no
acknowledgement is awaited. A command that cannot be published right now is
dropped, never queued; a late "forward" is worse than a missing one.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Optional

from .codec import encode_command
from .connection import ConnectionManager, NotConnectedError, PublishError
from .core.models import CarAction, CommandMessage
from .events import ErrorKind, EventSink
from .topics import COMMAND_QOS

LOGGER = logging.getLogger(__name__)


class CommandIdFactory:
    """Produces ``cmd-<epoch ms>-<sequence>`` ids, unique within the process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            sequence = next(self._counter)
        return f"cmd-{int(self._clock() * 1000)}-{sequence}"


class CommandPublisher:
    """Builds, encodes and publishes drive commands for the connected car."""

    def __init__(
        self,
        connection: ConnectionManager,
        sink: EventSink,
        *,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._connection = connection
        self._sink = sink
        self._id_factory = id_factory or CommandIdFactory()

    def send(self, action: str | CarAction) -> Optional[CommandMessage]:
        """Publish ``action``; returns the sent message, or None if it was dropped.

        Unknown action strings are passed through unchanged so newer firmware
        actions can be driven without a release of this package.
        """

        action_value = action.value if isinstance(action, CarAction) else str(action)
        message = CommandMessage(action=action_value, command_id=self._id_factory())

        topics = self._connection.topics
        try:
            if topics is None:
                raise NotConnectedError("Not connected to the MQTT broker")
            self._connection.publish(
                topics.command, encode_command(message), qos=COMMAND_QOS
            )
        except NotConnectedError as exc:
            LOGGER.warning("Dropping %s command: %s", action_value, exc)
            self._sink.report_error(
                ErrorKind.PUBLISH_FAILURE,
                f"Cannot send {action_value!r}: not connected",
                "send",
            )
            return None
        except PublishError as exc:
            LOGGER.error("Failed to send %s command: %s", action_value, exc)
            self._sink.report_error(
                ErrorKind.PUBLISH_FAILURE,
                f"Failed to send {action_value!r}: {exc}",
                "send",
            )
            return None

        LOGGER.debug("Sent command %s (%s)", message.action, message.command_id)
        return message

    def forward(self) -> Optional[CommandMessage]:
        return self.send(CarAction.FORWARD)

    def backward(self) -> Optional[CommandMessage]:
        return self.send(CarAction.BACKWARD)

    def left(self) -> Optional[CommandMessage]:
        return self.send(CarAction.LEFT)

    def right(self) -> Optional[CommandMessage]:
        return self.send(CarAction.RIGHT)

    def stop(self) -> Optional[CommandMessage]:
        return self.send(CarAction.STOP)
