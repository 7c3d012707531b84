"""A stand-in for the car firmware, for exercising the link without hardware.

The simulator speaks the device side of the protocol: it announces itself
with a retained online status (and a retained offline last will), executes
drive commands from the command topic and publishes telemetry on a fixed
interval. Moving actions stop on their own after ``command_duration_seconds``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional

from .adapters.mqtt import MQTTClient, MQTTConnectionError
from .codec import MalformedPayload, decode_command, encode_status, encode_telemetry
from .config import CarLinkConfig
from .core.idempotency import CommandIdempotencyGuard
from .core.models import CarAction, CommandMessage, DeviceStatus, TelemetryReading
from .topics import COMMAND_QOS, Channel, classify, topics_for

LOGGER = logging.getLogger(__name__)

TELEMETRY_QOS = 0
STATUS_QOS = 1

ClientFactory = Callable[..., MQTTClient]


class CarSimulator:
    """Simulated car bound to one broker and one device id."""

    def __init__(
        self,
        config: CarLinkConfig,
        *,
        client_factory: ClientFactory = MQTTClient,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._endpoint = config.endpoint()
        self._topics = topics_for(self._endpoint.device_id)
        self._client_factory = client_factory
        self._clock = clock
        self._rng = rng or random.Random()

        self._guard = CommandIdempotencyGuard()
        self._lock = threading.Lock()
        self._action = CarAction.STOP.value
        self._action_started = clock()
        self._battery = 100.0
        self._messages_sent = 0

        self._client: Optional[MQTTClient] = None
        self._stop_event = threading.Event()

    @property
    def device_id(self) -> str:
        return self._endpoint.device_id

    @property
    def current_action(self) -> str:
        with self._lock:
            self._expire_action()
            return self._action

    @property
    def messages_sent(self) -> int:
        return self._messages_sent

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        broker = self._config.broker
        resilience = self._config.resilience
        client = self._client_factory(
            self._endpoint,
            client_id=f"{broker.client_id_prefix}-sim-{self.device_id}",
            username=broker.username,
            password=broker.password,
            keepalive=broker.keepalive,
            reconnect_min_delay=resilience.reconnect_min_delay_seconds,
            reconnect_max_delay=resilience.reconnect_max_delay_seconds,
        )
        client.set_will(
            self._topics.status,
            encode_status(DeviceStatus(device_id=self.device_id, status="offline")),
            qos=STATUS_QOS,
            retain=True,
        )
        client.register_connect_handler(self._on_connected)
        client.set_message_handler(self._on_message)
        self._client = client

        LOGGER.info(
            "Simulating %s against %s", self.device_id, self._endpoint.broker_url
        )
        client.start()

    def run(self) -> None:
        """Start and publish telemetry until :meth:`stop` is called."""

        self._stop_event.clear()
        self.start()
        interval = self._config.simulator.telemetry_interval_seconds
        try:
            while not self._stop_event.wait(interval):
                self.publish_telemetry()
        finally:
            self.close()

    def stop(self) -> None:
        self._stop_event.set()

    def close(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        # An orderly disconnect suppresses the last will; say goodbye explicitly.
        if client.is_connected():
            try:
                client.publish(
                    self._topics.status,
                    encode_status(
                        DeviceStatus(device_id=self.device_id, status="offline")
                    ),
                    qos=STATUS_QOS,
                    retain=True,
                )
            except MQTTConnectionError as exc:
                LOGGER.warning("Could not publish offline status: %s", exc)
        client.close()

    # ------------------------------------------------------------------
    # Device behaviour
    # ------------------------------------------------------------------
    def handle_command(self, message: CommandMessage) -> bool:
        """Execute ``message`` unless it is a duplicate delivery."""

        if not self._guard.should_process(message.command_id):
            return False

        with self._lock:
            self._action = message.action
            self._action_started = self._clock()

        self._guard.mark_processed(message.command_id, action=message.action)
        LOGGER.info("Executing %s (%s)", message.action, message.command_id or "-")
        return True

    def sample(self) -> TelemetryReading:
        """Take one simulated sensor reading."""

        action = self.current_action
        with self._lock:
            drain = 0.05 if action == CarAction.STOP.value else 0.5
            self._battery = max(0.0, self._battery - drain)
            battery = int(self._battery)

        return TelemetryReading(
            battery_percent=battery,
            distance_front_cm=self._rng.randint(5, 400),
            temperature_c=self._rng.randint(22, 38),
            current_action=action,
            wifi_rssi_dbm=self._rng.randint(-80, -40),
            free_heap_bytes=self._rng.randint(180_000, 240_000),
        )

    def publish_telemetry(self) -> bool:
        client = self._client
        if client is None or not client.is_connected():
            LOGGER.debug("Skipping telemetry while offline")
            return False

        reading = self.sample()
        try:
            client.publish(
                self._topics.telemetry,
                encode_telemetry(reading, device_id=self.device_id),
                qos=TELEMETRY_QOS,
            )
        except MQTTConnectionError as exc:
            LOGGER.warning("Telemetry publish failed: %s", exc)
            return False

        self._messages_sent += 1
        LOGGER.debug(
            "Telemetry #%d: distance=%s rssi=%s action=%s",
            self._messages_sent,
            reading.distance_display,
            reading.rssi_display,
            reading.current_action,
        )
        return True

    # ------------------------------------------------------------------
    # MQTT callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connected(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.subscribe(self._topics.command, qos=COMMAND_QOS)
            client.publish(
                self._topics.status,
                encode_status(
                    DeviceStatus(
                        device_id=self.device_id,
                        status="online",
                        firmware_version=self._config.simulator.firmware,
                    )
                ),
                qos=STATUS_QOS,
                retain=True,
            )
        except MQTTConnectionError as exc:
            LOGGER.error("Failed to announce simulator: %s", exc)
            return
        LOGGER.info("Subscribed to %s and published online status", self._topics.command)

    def _on_message(self, topic: str, payload: bytes) -> None:
        if classify(topic) != Channel.COMMAND:
            LOGGER.debug("Ignoring message on %s", topic)
            return
        try:
            message = decode_command(payload)
        except MalformedPayload as exc:
            LOGGER.warning("Ignoring malformed command (%s): %s", exc, exc.preview)
            return
        self.handle_command(message)

    def _expire_action(self) -> None:
        duration = self._config.simulator.command_duration_seconds
        if duration <= 0 or self._action == CarAction.STOP.value:
            return
        if self._clock() - self._action_started > duration:
            LOGGER.info("Command %s timed out; stopping", self._action)
            self._action = CarAction.STOP.value
