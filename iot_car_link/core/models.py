"""Domain models for the car link: endpoints, telemetry, status and commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from urllib.parse import urlsplit

from .. import constants


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(str, Enum):
    """Current state of the broker session."""

    DISCONNECTED = "disconnected"
    """No live session (initial state)."""

    CONNECTING = "connecting"
    """A user-requested connection attempt is in flight."""

    CONNECTED = "connected"
    """Session established and subscriptions installed."""


class CarAction(str, Enum):
    """Drive actions understood by the current car firmware."""

    FORWARD = "forward"
    BACKWARD = "backward"
    LEFT = "left"
    RIGHT = "right"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class BrokerEndpoint:
    """Broker address and the single device this link talks to."""

    host: str
    port: int = constants.DEFAULT_BROKER_PORT
    device_id: str = constants.DEFAULT_DEVICE_ID

    def __post_init__(self) -> None:
        host = (self.host or "").strip()
        if not host:
            raise ValueError("Broker host must not be empty")
        if not 1 <= int(self.port) <= 65535:
            raise ValueError(f"Port must be between 1 and 65535 (got {self.port})")

        device_id = (self.device_id or "").strip() or constants.DEFAULT_DEVICE_ID

        object.__setattr__(self, "host", host)
        object.__setattr__(self, "port", int(self.port))
        object.__setattr__(self, "device_id", device_id)

    @property
    def broker_url(self) -> str:
        return f"tcp://{self.host}:{self.port}"

    @classmethod
    def from_url(
        cls, url: str, device_id: str = constants.DEFAULT_DEVICE_ID
    ) -> "BrokerEndpoint":
        """Build an endpoint from ``tcp://host[:port]`` or a bare ``host[:port]``."""

        value = url.strip()
        if "://" not in value:
            value = f"tcp://{value}"

        parts = urlsplit(value)
        if parts.scheme != "tcp":
            raise ValueError(f"Unsupported broker scheme: {parts.scheme!r}")

        try:
            port = parts.port
        except ValueError as exc:
            raise ValueError(f"Invalid broker port in {url!r}") from exc

        return cls(
            host=parts.hostname or "",
            port=port if port is not None else constants.DEFAULT_BROKER_PORT,
            device_id=device_id,
        )


@dataclass(frozen=True, slots=True)
class TelemetryReading:
    """One telemetry sample received from the car.

    ``observed_at`` is stamped locally on receipt; the firmware does not send a
    usable wall-clock timestamp.
    """

    battery_percent: int = 0
    distance_front_cm: int = 0
    temperature_c: int = 0
    current_action: str = "unknown"
    wifi_rssi_dbm: int = 0
    free_heap_bytes: int = 0
    observed_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def empty(cls) -> "TelemetryReading":
        """Reset value meaning "no data yet"."""
        return cls()

    @property
    def battery_display(self) -> str:
        return f"{self.battery_percent}%"

    @property
    def distance_display(self) -> str:
        return f"{self.distance_front_cm}cm"

    @property
    def temperature_display(self) -> str:
        return f"{self.temperature_c}°C"

    @property
    def rssi_display(self) -> str:
        return f"{self.wifi_rssi_dbm} dBm"

    @property
    def free_heap_display(self) -> str:
        return f"{self.free_heap_bytes // 1024} KB"

    @property
    def action_display(self) -> str:
        if not self.current_action or self.current_action.lower() == "stop":
            return "IDLE"
        return self.current_action.upper()


@dataclass(frozen=True, slots=True)
class DeviceStatus:
    device_id: str = ""
    status: str = "offline"
    firmware_version: str = ""

    @classmethod
    def unknown(cls) -> "DeviceStatus":
        return cls()

    @property
    def is_online(self) -> bool:
        return self.status == "online"


@dataclass(frozen=True, slots=True)
class CommandMessage:
    action: str
    command_id: str
