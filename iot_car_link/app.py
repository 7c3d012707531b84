"""Application wiring for iot-car-link."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Coroutine, List, Optional

from .adapters import MQTTClient
from .commands import CommandPublisher
from .config import CarLinkConfig, load_config
from .connection import ConnectionManager, TransportFactory
from .core.models import ConnectionState, DeviceStatus, TelemetryReading
from .events import ErrorEvent, ErrorKind, EventSink
from .health import HealthReporter, HealthServer
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


class CarLinkApp:
    """Wires the event sink, connection manager and command publisher.

    The same instance serves interactive use (``connect_and_wait`` then
    ``commands.send``) and the long-running ``monitor`` mode (``run``), which
    logs every event and optionally serves ``/healthz``.
    """

    def __init__(
        self,
        config: Optional[CarLinkConfig] = None,
        *,
        transport_factory: TransportFactory = MQTTClient,
    ) -> None:
        self._config = config or load_config()
        self.sink = EventSink()
        self.connection = ConnectionManager(
            self.sink,
            resilience=self._config.resilience,
            transport_factory=transport_factory,
            client_id_prefix=self._config.broker.client_id_prefix,
            keepalive=self._config.broker.keepalive,
        )
        self.commands = CommandPublisher(self.connection, self.sink)

        self._health = HealthReporter(
            telemetry_stale_after=self._config.resilience.telemetry_stale_seconds
        )
        self._health_server: Optional[HealthServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._detachers: List[Callable[[], None]] = []
        self._ever_connected = False
        self._exit_code = 0

    @property
    def config(self) -> CarLinkConfig:
        return self._config

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------
    def connect(self) -> None:
        self.connection.connect(
            self._config.endpoint(),
            username=self._config.broker.username,
            password=self._config.broker.password,
        )

    def disconnect(self) -> None:
        self.connection.disconnect()

    def connect_and_wait(self, timeout: float = 10.0) -> bool:
        """Connect and block until the session is up; False on failure or timeout."""

        mailbox = self.sink.connection_state.observe()
        try:
            self.connect()
            deadline = time.monotonic() + timeout
            while True:
                if self.connection.is_connected:
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                state = mailbox.get(timeout=remaining)
                if state == ConnectionState.DISCONNECTED:
                    return self.connection.is_connected
        finally:
            mailbox.close()

    # ------------------------------------------------------------------
    # Monitor mode
    # ------------------------------------------------------------------
    async def run(self) -> int:
        """Stay connected and log events until ``request_stop`` is called.

        Returns the process exit status: 1 when the very first connection
        attempt fails, 0 otherwise. Once connected, lost sessions are retried
        in the background for as long as the link runs.
        """

        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        self._ever_connected = False
        self._exit_code = 0
        self._attach_observers()

        resilience = self._config.resilience
        if resilience.health_enabled:
            self._health_server = HealthServer(
                self._health, resilience.health_host, resilience.health_port
            )
            await self._health_server.start()

        LOGGER.info("iot-car-link starting with config: %s", self._config.path)
        self.connect()

        try:
            await self._stop_event.wait()
        finally:
            self.disconnect()
            for detach in self._detachers:
                detach()
            self._detachers.clear()
            if self._health_server is not None:
                await self._health_server.stop()
                self._health_server = None

        return self._exit_code

    def request_stop(self) -> None:
        """Ask ``run`` to return; safe to call from any thread."""
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    @classmethod
    def start(cls, config: Optional[CarLinkConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("iot-car-link received shutdown signal")
            return 0

    # ------------------------------------------------------------------
    # Observers (network thread)
    # ------------------------------------------------------------------
    def _attach_observers(self) -> None:
        self._detachers = [
            self.sink.connection_state.subscribe(self._on_connection_state),
            self.sink.telemetry.subscribe(self._on_telemetry),
            self.sink.device_status.subscribe(self._on_device_status),
            self.sink.errors.subscribe(self._on_error),
        ]

    def _schedule(self, coro: Coroutine[object, object, None]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            return
        asyncio.run_coroutine_threadsafe(coro, loop)

    def _on_connection_state(self, state: ConnectionState) -> None:
        LOGGER.info("Connection state: %s", state.value)
        if state == ConnectionState.CONNECTED:
            self._ever_connected = True
        self._schedule(self._health.set_connection_state(state))

    def _on_telemetry(self, reading: TelemetryReading) -> None:
        # The sink resets the channel on disconnect; that value is not a reading.
        if not self.connection.is_connected:
            return
        self._schedule(self._health.record_telemetry(reading))
        LOGGER.info(
            "Telemetry: battery=%s distance=%s temperature=%s action=%s rssi=%s heap=%s",
            reading.battery_display,
            reading.distance_display,
            reading.temperature_display,
            reading.action_display,
            reading.rssi_display,
            reading.free_heap_display,
        )

    def _on_device_status(self, status: DeviceStatus) -> None:
        self._schedule(self._health.set_device_status(status))

    def _on_error(self, event: ErrorEvent) -> None:
        LOGGER.warning("%s during %s: %s", event.kind.value, event.operation, event.message)
        if (
            event.kind == ErrorKind.CONNECT_FAILURE
            and event.operation == "connect"
            and not self._ever_connected
        ):
            LOGGER.error("Unable to reach the broker, giving up")
            self._exit_code = 1
            self.request_stop()
