"""Core primitives for iot-car-link."""

from .idempotency import CommandIdempotencyGuard, ProcessedCommand
from .models import (
    BrokerEndpoint,
    CarAction,
    CommandMessage,
    ConnectionState,
    DeviceStatus,
    TelemetryReading,
)

__all__ = [
    "BrokerEndpoint",
    "CarAction",
    "CommandIdempotencyGuard",
    "CommandMessage",
    "ConnectionState",
    "DeviceStatus",
    "ProcessedCommand",
    "TelemetryReading",
]
