"""Broker session lifecycle for a single car.

:class:`ConnectionManager` owns the MQTT session, the connection state
machine, subscription (re)establishment and inbound message routing:

    DISCONNECTED --connect()--> CONNECTING
    CONNECTING   --session established--> CONNECTED (subscribe telemetry/status)
    CONNECTING   --session failed--> DISCONNECTED (CONNECT_FAILURE, no retry)
    CONNECTED    --connection lost--> DISCONNECTED (CONNECTION_LOST; transport
                                      retries and re-enters CONNECTED on success)
    CONNECTED    --disconnect()--> DISCONNECTED (session closed, no retries)

Transport callbacks arrive on the paho network thread while ``connect``,
``disconnect`` and ``publish`` are called from elsewhere. Every transition
happens under ``_lock``; network I/O and event delivery happen after the lock
is released. Each transport is tagged with a session generation so callbacks
from a torn-down session are ignored.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional, Protocol

from . import constants
from .adapters.mqtt import MQTTClient, MQTTConnectionError
from .codec import MalformedPayload, decode_status, decode_telemetry
from .config import ResilienceConfig
from .core.models import BrokerEndpoint, ConnectionState, DeviceStatus, TelemetryReading
from .events import ErrorKind, EventSink
from .topics import SUBSCRIPTION_QOS, Channel, DeviceTopics, classify, topics_for

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "NotConnectedError",
    "PublishError",
    "Transport",
    "TransportFactory",
]


class PublishError(RuntimeError):
    """Raised when an outbound message cannot be handed to the broker."""


class NotConnectedError(PublishError):
    """Raised when publishing while no session is established."""


class Transport(Protocol):
    """Subset of :class:`MQTTClient` the manager relies on."""

    def start(self) -> None: ...

    def close(self) -> None: ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def set_message_handler(self, handler) -> None: ...

    def register_connect_handler(self, handler: Callable[[], None]) -> None: ...

    def register_connect_failure_handler(
        self, handler: Callable[[str], None]
    ) -> None: ...

    def register_disconnect_handler(self, handler: Callable[[str], None]) -> None: ...


TransportFactory = Callable[..., Transport]


class ConnectionManager:
    """Connection state machine for one car behind one broker."""

    def __init__(
        self,
        sink: EventSink,
        *,
        resilience: Optional[ResilienceConfig] = None,
        transport_factory: TransportFactory = MQTTClient,
        client_id_prefix: str = constants.DEFAULT_CLIENT_ID_PREFIX,
        keepalive: int = constants.DEFAULT_KEEPALIVE_SECONDS,
    ) -> None:
        self._sink = sink
        self._resilience = resilience or ResilienceConfig()
        self._transport_factory = transport_factory
        self._client_id_prefix = client_id_prefix
        self._keepalive = keepalive

        self._lock = threading.Lock()
        self._emit_lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._published_state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._transport: Optional[Transport] = None
        self._endpoint: Optional[BrokerEndpoint] = None
        self._topics: Optional[DeviceTopics] = None
        self._client_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def endpoint(self) -> Optional[BrokerEndpoint]:
        with self._lock:
            return self._endpoint

    @property
    def topics(self) -> Optional[DeviceTopics]:
        with self._lock:
            return self._topics

    @property
    def client_id(self) -> Optional[str]:
        with self._lock:
            return self._client_id

    # ------------------------------------------------------------------
    # User-initiated operations
    # ------------------------------------------------------------------
    def connect(
        self,
        endpoint: BrokerEndpoint,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """Start connecting to ``endpoint``; the outcome arrives as events."""

        stale: Optional[Transport] = None
        with self._lock:
            if self._state != ConnectionState.DISCONNECTED:
                LOGGER.info("connect() ignored while %s", self._state.value)
                return

            # A transport left over from a lost session is still retrying in
            # the background; replace it.
            stale = self._transport

            self._generation += 1
            generation = self._generation
            client_id = f"{self._client_id_prefix}-{uuid.uuid4().hex[:12]}"
            transport = self._transport_factory(
                endpoint,
                client_id=client_id,
                username=username,
                password=password,
                keepalive=self._keepalive,
                reconnect_min_delay=self._resilience.reconnect_min_delay_seconds,
                reconnect_max_delay=self._resilience.reconnect_max_delay_seconds,
            )
            transport.register_connect_handler(
                lambda: self._handle_session_established(generation)
            )
            transport.register_connect_failure_handler(
                lambda reason: self._handle_connect_failure(generation, reason)
            )
            transport.register_disconnect_handler(
                lambda reason: self._handle_session_lost(generation, reason)
            )
            transport.set_message_handler(
                lambda topic, payload: self._handle_message(generation, topic, payload)
            )

            self._transport = transport
            self._endpoint = endpoint
            self._topics = topics_for(endpoint.device_id)
            self._client_id = client_id
            self._state = ConnectionState.CONNECTING

        self._close_quietly(stale)
        LOGGER.info(
            "Connecting to %s for device %s", endpoint.broker_url, endpoint.device_id
        )
        self._publish_state()

        try:
            transport.start()
        except MQTTConnectionError as exc:
            self._handle_connect_failure(generation, str(exc))

    def disconnect(self) -> None:
        """Close the session. A no-op unless currently connected."""

        with self._lock:
            transport = self._transport
            if self._state == ConnectionState.CONNECTING:
                LOGGER.debug("disconnect() ignored while connecting")
                return
            was_connected = self._state == ConnectionState.CONNECTED
            if not was_connected and transport is None:
                return

            self._generation += 1
            self._transport = None
            self._state = ConnectionState.DISCONNECTED

        if was_connected:
            LOGGER.info("Disconnecting from MQTT broker")
        else:
            LOGGER.info("Stopping background reconnection")
        self._close_quietly(transport)

        if was_connected:
            self._publish_disconnected()

    def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        with self._lock:
            transport = self._transport
            connected = self._state == ConnectionState.CONNECTED

        if not connected or transport is None:
            raise NotConnectedError("Not connected to the MQTT broker")

        try:
            transport.publish(topic, payload, qos=qos)
        except MQTTConnectionError as exc:
            raise PublishError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Transport callbacks (network thread)
    # ------------------------------------------------------------------
    def _handle_session_established(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._transport is None:
                LOGGER.debug("Ignoring connect callback from stale session")
                return
            reconnected = self._state == ConnectionState.DISCONNECTED
            self._state = ConnectionState.CONNECTED
            transport = self._transport
            topics = self._topics

        if reconnected:
            LOGGER.info("Reconnected to MQTT broker; restoring subscriptions")
        self._publish_state()

        assert topics is not None
        for channel, qos in SUBSCRIPTION_QOS.items():
            topic = topics.for_channel(channel)
            try:
                transport.subscribe(topic, qos=qos)
            except MQTTConnectionError as exc:
                if self._is_current(generation):
                    LOGGER.error("Failed to subscribe to %s: %s", topic, exc)
                    self._sink.report_error(
                        ErrorKind.CONNECT_FAILURE,
                        f"Failed to subscribe to {topic}: {exc}",
                        "subscribe",
                    )
                return
            LOGGER.debug("Subscribed to %s (qos=%d)", topic, qos)

    def _handle_connect_failure(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if self._state != ConnectionState.CONNECTING:
                # Background reconnect attempt after a lost session; the
                # transport keeps retrying.
                LOGGER.debug("Reconnect attempt failed: %s", reason)
                return
            self._generation += 1
            transport = self._transport
            self._transport = None
            self._state = ConnectionState.DISCONNECTED

        LOGGER.error("Connection failed: %s", reason)
        self._close_quietly(transport)
        self._publish_state()
        self._sink.report_error(
            ErrorKind.CONNECT_FAILURE, f"Connection failed: {reason}", "connect"
        )

    def _handle_session_lost(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            state = self._state
            if state == ConnectionState.DISCONNECTED:
                return
            if state == ConnectionState.CONNECTED:
                self._state = ConnectionState.DISCONNECTED

        if state == ConnectionState.CONNECTING:
            # Broker dropped us before the session came up.
            self._handle_connect_failure(generation, reason)
            return

        LOGGER.warning("Connection to MQTT broker lost (%s); retrying in background", reason)
        self._publish_disconnected()
        self._sink.report_error(
            ErrorKind.CONNECTION_LOST, f"Connection lost: {reason}", "connection"
        )

    def _handle_message(self, generation: int, topic: str, payload: bytes) -> None:
        with self._lock:
            current = (
                generation == self._generation
                and self._state == ConnectionState.CONNECTED
            )
        if not current:
            LOGGER.debug("Dropping message on %s received while not connected", topic)
            return

        channel = classify(topic)
        try:
            if channel == Channel.TELEMETRY:
                self._sink.telemetry.publish(decode_telemetry(payload))
            elif channel == Channel.STATUS:
                status = decode_status(payload)
                LOGGER.info(
                    "Device %s is %s (firmware=%s)",
                    status.device_id or "?",
                    status.status,
                    status.firmware_version or "?",
                )
                self._sink.device_status.publish(status)
            else:
                LOGGER.debug("Ignoring message on unrecognised topic %s", topic)
        except MalformedPayload as exc:
            LOGGER.warning("Dropping malformed message on %s: %s", topic, exc)
            self._sink.report_error(
                ErrorKind.MALFORMED_PAYLOAD, f"Malformed payload on {topic}: {exc}", "decode"
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _publish_state(self) -> None:
        # Emits the state as of now, not as of the transition.
        with self._emit_lock:
            state = self.state
            if state == self._published_state:
                return
            self._published_state = state
            self._sink.connection_state.publish(state)

    def _publish_disconnected(self) -> None:
        self._publish_state()
        self._sink.telemetry.publish(TelemetryReading.empty())
        self._sink.device_status.publish(DeviceStatus.unknown())

    @staticmethod
    def _close_quietly(transport: Optional[Transport]) -> None:
        if transport is None:
            return
        try:
            transport.close()
        except Exception:
            LOGGER.warning("Error while closing MQTT transport", exc_info=True)
