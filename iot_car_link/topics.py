"""Topic layout for a single car: ``iot-car/<device_id>/<channel>``."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

TOPIC_NAMESPACE = "iot-car"


class Channel(str, Enum):
    TELEMETRY = "telemetry"
    STATUS = "status"
    COMMAND = "command"


# Telemetry is high-frequency and loss tolerant; status changes are rare and
# must not be missed.
SUBSCRIPTION_QOS: Dict[Channel, int] = {
    Channel.TELEMETRY: 0,
    Channel.STATUS: 1,
}

COMMAND_QOS = 1


@dataclass(frozen=True, slots=True)
class DeviceTopics:
    telemetry: str
    status: str
    command: str

    def for_channel(self, channel: Channel) -> str:
        return getattr(self, channel.value)


def topics_for(device_id: str, *, namespace: str = TOPIC_NAMESPACE) -> DeviceTopics:
    base = f"{namespace}/{device_id}"
    return DeviceTopics(
        telemetry=f"{base}/{Channel.TELEMETRY.value}",
        status=f"{base}/{Channel.STATUS.value}",
        command=f"{base}/{Channel.COMMAND.value}",
    )


def classify(topic: str) -> Optional[Channel]:
    """Return the channel named by the last topic level, or None.

    Only the suffix is inspected so that broker-added prefixes do not break
    routing.
    """

    suffix = topic.rstrip("/").rsplit("/", 1)[-1]
    try:
        return Channel(suffix)
    except ValueError:
        return None
