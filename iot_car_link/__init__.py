"""MQTT remote control and telemetry link for the IoT car."""

__version__ = "0.1.0"
