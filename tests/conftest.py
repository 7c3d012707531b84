from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from iot_car_link.config import load_config
from iot_car_link.connection import ConnectionManager
from iot_car_link.core.models import BrokerEndpoint
from iot_car_link.events import EventSink


class FakeTransport:
    """In-memory stand-in for :class:`MQTTClient`; tests drive its callbacks."""

    def __init__(self, endpoint: BrokerEndpoint, **options) -> None:
        self.endpoint = endpoint
        self.options = options
        self.started = False
        self.close_calls = 0
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.subscribed: list[tuple[str, int]] = []
        self.will: Optional[tuple[str, bytes, int, bool]] = None
        self.connected = False

        self.start_error: Optional[Exception] = None
        self.publish_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None

        self._message_handler: Optional[Callable[[str, bytes], None]] = None
        self._connect_handlers: List[Callable[[], None]] = []
        self._failure_handlers: List[Callable[[str], None]] = []
        self._disconnect_handlers: List[Callable[[str], None]] = []

    # MQTTClient interface ------------------------------------------
    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def publish(self, topic, payload, qos=1, retain=False) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, qos, retain))

    def subscribe(self, topic, qos=1) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribed.append((topic, qos))

    def set_will(self, topic, payload, *, qos=0, retain=False) -> None:
        self.will = (topic, payload, qos, retain)

    def set_message_handler(self, handler) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler) -> None:
        self._connect_handlers.append(handler)

    def register_connect_failure_handler(self, handler) -> None:
        self._failure_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self.connected

    # Simulated network events ---------------------------------------
    def establish(self) -> None:
        self.connected = True
        for handler in list(self._connect_handlers):
            handler()

    def fail(self, reason: str = "Connection refused") -> None:
        for handler in list(self._failure_handlers):
            handler(reason)

    def lose(self, reason: str = "Unspecified error") -> None:
        self.connected = False
        for handler in list(self._disconnect_handlers):
            handler(reason)

    def deliver(self, topic: str, payload: bytes) -> None:
        assert self._message_handler is not None
        self._message_handler(topic, payload)


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.start_error: Optional[Exception] = None

    def __call__(self, endpoint: BrokerEndpoint, **options) -> FakeTransport:
        transport = FakeTransport(endpoint, **options)
        transport.start_error = self.start_error
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class Recorder:
    """Collects every value published on a channel."""

    def __init__(self, channel) -> None:
        self.values: list = []
        self.detach = channel.subscribe(self.values.append)


@pytest.fixture
def endpoint() -> BrokerEndpoint:
    return BrokerEndpoint(host="broker.local", port=1883, device_id="car-001")


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def sink() -> EventSink:
    return EventSink()


@pytest.fixture
def manager(sink: EventSink, transport_factory: FakeTransportFactory) -> ConnectionManager:
    return ConnectionManager(sink, transport_factory=transport_factory)


@pytest.fixture
def connected(manager, endpoint, transport_factory) -> FakeTransport:
    manager.connect(endpoint)
    transport = transport_factory.latest
    transport.establish()
    return transport


@pytest.fixture
def config_file(tmp_path: Path) -> Callable[[str], Path]:
    def write(text: str = "") -> Path:
        path = tmp_path / "iot-car-link.cfg"
        path.write_text(text, encoding="utf-8")
        return path

    return write


@pytest.fixture
def car_config(config_file):
    return load_config(
        config_file(
            "[broker]\nhost = broker.local\n[device]\ndevice_id = car-007\n"
        )
    )
