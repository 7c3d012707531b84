"""Constants used across the iot-car-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "iot-car-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_KEEPALIVE_SECONDS = 60
DEFAULT_CLIENT_ID_PREFIX = APP_NAME

DEFAULT_DEVICE_ID = "car-001"
DEFAULT_SIMULATOR_FIRMWARE = "sim-v1.0"
