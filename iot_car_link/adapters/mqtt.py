"""MQTT adapter encapsulating paho-mqtt client usage.

The paho network loop runs on its own thread (``loop_start``); every handler
registered here is invoked on that thread. paho also owns automatic
reconnection: once started, the loop keeps retrying with the configured
backoff until :meth:`MQTTClient.close` is called.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..core.models import BrokerEndpoint

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = logging.getLogger("paho.mqtt")

MessageHandler = Callable[[str, bytes], None]
ReasonHandler = Callable[[str], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client cannot carry out a broker operation."""


def _describe(reason_code: Any) -> str:
    return str(getattr(reason_code, "getName", lambda: reason_code)())


_AWAITING_ACK = (mqtt.mqtt_ms_wait_for_puback, mqtt.mqtt_ms_wait_for_pubrec)


def _discard_outgoing(client: mqtt.Client, mid: Optional[int] = None) -> int:
    """Drop QoS>0 messages from paho's resend queue; all of them when ``mid`` is None.

    paho exposes no public call for this, so the queue is edited under its own
    mutex and the in-flight counter is kept consistent.
    """

    with client._out_message_mutex:
        if mid is None:
            dropped = list(client._out_messages.values())
            client._out_messages.clear()
        else:
            message = client._out_messages.pop(mid, None)
            dropped = [message] if message is not None else []
        for message in dropped:
            if message.state in _AWAITING_ACK:
                client._inflight_messages = max(0, client._inflight_messages - 1)
    return len(dropped)


class MQTTClient:
    """Thin wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        endpoint: BrokerEndpoint,
        *,
        client_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        reconnect_min_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.client_id = client_id
        self.keepalive = keepalive
        self._username = username
        self._password = password
        self._reconnect_min_delay = reconnect_min_delay
        self._reconnect_max_delay = reconnect_max_delay

        self._client: Optional[mqtt.Client] = None
        self._connected: bool = False
        self._message_handler: Optional[MessageHandler] = None
        self._connect_handlers: List[Callable[[], None]] = []
        self._connect_failure_handlers: List[ReasonHandler] = []
        self._disconnect_handlers: List[ReasonHandler] = []
        self._will: Optional[tuple[str, bytes, int, bool]] = None

    def start(self) -> None:
        """Begin connecting in the background.

        Returns immediately; the outcome is reported through the connect or
        connect-failure handlers.
        """

        if self._client is not None:
            raise MQTTConnectionError("MQTT client already started")

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )
        client.enable_logger(PAHO_LOGGER)

        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._will is not None:
            topic, payload, qos, retain = self._will
            client.will_set(topic, payload, qos=qos, retain=retain)

        client.reconnect_delay_set(
            min_delay=max(1, int(self._reconnect_min_delay)),
            max_delay=max(1, int(self._reconnect_max_delay)),
        )

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s as %s",
            self.endpoint.broker_url,
            self.client_id,
        )

        try:
            client.connect_async(self.endpoint.host, self.endpoint.port, self.keepalive)
            client.loop_start()
        except (OSError, ValueError) as exc:
            self._client = None
            raise MQTTConnectionError(f"Unable to start MQTT client: {exc}") from exc

    def close(self) -> None:
        """Disconnect and stop the network loop; no reconnects afterwards.

        Safe to call from a handler running on the network thread.
        """

        client = self._client
        if client is None:
            return
        self._client = None
        self._connected = False

        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        client = self._client
        if client is None:
            raise MQTTConnectionError("MQTT client not connected")

        info = client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            # paho keeps failed QoS>0 messages queued and resends them after a
            # reconnect; a failed publish must stay failed.
            _discard_outgoing(client, info.mid)
            raise MQTTConnectionError(
                f"Publish failed: {mqtt.error_string(info.rc)} (rc={info.rc})"
            )

    def subscribe(self, topic: str, qos: int = 1) -> None:
        client = self._client
        if client is None:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(
                f"Subscribe failed: {mqtt.error_string(result)} (rc={result})"
            )

    def set_will(
        self, topic: str, payload: bytes, *, qos: int = 0, retain: bool = False
    ) -> None:
        """Register a last-will message; must be called before ``start()``."""
        self._will = (topic, payload, qos, retain)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: Callable[[], None]) -> None:
        self._connect_handlers.append(handler)

    def register_connect_failure_handler(self, handler: ReasonHandler) -> None:
        self._connect_failure_handlers.append(handler)

    def register_disconnect_handler(self, handler: ReasonHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            reason = _describe(reason_code)
            LOGGER.error("MQTT connection refused: %s", reason)
            self._connected = False
            self._dispatch(self._connect_failure_handlers, f"Connection refused: {reason}")
            return

        LOGGER.info("Connected to MQTT broker %s", self.endpoint.broker_url)
        self._connected = True
        for handler in list(self._connect_handlers):
            try:
                handler()
            except Exception:
                LOGGER.exception("MQTT connect handler raised an exception")

    def _on_connect_fail(self, client, userdata) -> None:
        LOGGER.warning("Unable to reach MQTT broker %s", self.endpoint.broker_url)
        self._connected = False
        self._dispatch(
            self._connect_failure_handlers,
            f"Unable to reach broker at {self.endpoint.broker_url}",
        )

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties
    ) -> None:
        reason = _describe(reason_code)
        LOGGER.info("Disconnected from MQTT broker (%s)", reason)
        self._connected = False
        dropped = _discard_outgoing(client)
        if dropped:
            LOGGER.info("Discarded %d unacknowledged outbound message(s)", dropped)
        self._dispatch(self._disconnect_handlers, reason)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        if handler is None:
            return

        try:
            handler(message.topic, message.payload)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")

    @staticmethod
    def _dispatch(handlers: List[ReasonHandler], reason: str) -> None:
        for handler in list(handlers):
            try:
                handler(reason)
            except Exception:
                LOGGER.exception("MQTT handler raised an exception")
