"""JSON wire codec for car commands, telemetry and status messages.

Decoding is deliberately tolerant: every field has a fallback so a partially
populated payload still yields a value. Only payloads that are not a JSON
object at all are rejected with :class:`MalformedPayload`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from .core.models import CommandMessage, DeviceStatus, TelemetryReading

LOGGER = logging.getLogger(__name__)

_PREVIEW_LENGTH = 64


class MalformedPayload(ValueError):
    """Raised when an inbound payload is not a JSON object."""

    def __init__(self, message: str, *, payload: bytes = b"") -> None:
        super().__init__(message)
        self.payload = payload

    @property
    def preview(self) -> str:
        return self.payload[:_PREVIEW_LENGTH].decode("utf-8", errors="replace")


def _dumps(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def _load_object(payload: bytes) -> dict[str, Any]:
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise MalformedPayload(f"Payload is not valid JSON: {exc}", payload=payload) from exc

    if not isinstance(document, dict):
        raise MalformedPayload(
            f"Expected a JSON object, got {type(document).__name__}", payload=payload
        )
    return document


def _int_field(document: Mapping[str, Any], key: str, default: int = 0) -> int:
    value = document.get(key)
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        LOGGER.debug("Ignoring non-numeric %s=%r", key, value)
        return default


def _str_field(document: Mapping[str, Any], key: str, default: str) -> str:
    value = document.get(key)
    if value is None:
        return default
    return str(value)


# ----------------------------------------------------------------------
# Application side
# ----------------------------------------------------------------------
def encode_command(message: CommandMessage) -> bytes:
    """Encode a command as ``{"action": ..., "command_id": ...}``."""

    return _dumps({"action": message.action, "command_id": message.command_id})


def decode_telemetry(payload: bytes) -> TelemetryReading:
    document = _load_object(payload)
    return TelemetryReading(
        battery_percent=_int_field(document, "battery"),
        distance_front_cm=_int_field(document, "distance_front"),
        temperature_c=_int_field(document, "temperature"),
        current_action=_str_field(document, "current_action", "unknown"),
        wifi_rssi_dbm=_int_field(document, "wifi_rssi"),
        free_heap_bytes=_int_field(document, "free_heap"),
    )


def decode_status(payload: bytes) -> DeviceStatus:
    document = _load_object(payload)
    return DeviceStatus(
        device_id=_str_field(document, "device_id", ""),
        status=_str_field(document, "status", "unknown"),
        firmware_version=_str_field(document, "firmware", ""),
    )


# ----------------------------------------------------------------------
# Device side (simulator)
# ----------------------------------------------------------------------
def encode_telemetry(
    reading: TelemetryReading, *, device_id: Optional[str] = None
) -> bytes:
    document: dict[str, Any] = {}
    if device_id:
        document["device_id"] = device_id
    document.update(
        {
            "battery": reading.battery_percent,
            "distance_front": reading.distance_front_cm,
            "temperature": reading.temperature_c,
            "current_action": reading.current_action,
            "wifi_rssi": reading.wifi_rssi_dbm,
            "free_heap": reading.free_heap_bytes,
        }
    )
    return _dumps(document)


def encode_status(status: DeviceStatus) -> bytes:
    document = {"device_id": status.device_id, "status": status.status}
    if status.firmware_version:
        document["firmware"] = status.firmware_version
    return _dumps(document)


def decode_command(payload: bytes) -> CommandMessage:
    document = _load_object(payload)
    action = document.get("action")
    if not isinstance(action, str) or not action:
        raise MalformedPayload("Command payload has no action", payload=payload)
    return CommandMessage(
        action=action, command_id=_str_field(document, "command_id", "")
    )
