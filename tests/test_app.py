"""Tests for application wiring and the command line."""

import asyncio
import json
import threading

import pytest

from conftest import FakeTransport, FakeTransportFactory

from iot_car_link import cli
from iot_car_link.adapters.mqtt import MQTTConnectionError
from iot_car_link.app import CarLinkApp
from iot_car_link.connection import ConnectionState


class AutoConnectTransport(FakeTransport):
    def start(self) -> None:
        super().start()
        self.establish()


class AutoConnectFactory(FakeTransportFactory):
    def __call__(self, endpoint, **options):
        transport = AutoConnectTransport(endpoint, **options)
        self.created.append(transport)
        return transport


def test_connect_and_wait_succeeds_when_session_comes_up(car_config):
    factory = FakeTransportFactory()
    app = CarLinkApp(car_config, transport_factory=factory)

    timer = threading.Timer(0.05, lambda: factory.latest.establish())
    timer.start()
    try:
        assert app.connect_and_wait(timeout=2.0) is True
    finally:
        timer.join()

    assert app.connection.state == ConnectionState.CONNECTED
    assert factory.latest.endpoint.device_id == "car-007"
    assert app.sink.connection_state.observer_count == 0


def test_connect_and_wait_reports_failure(car_config):
    factory = FakeTransportFactory()
    factory.start_error = MQTTConnectionError("Connection refused")
    app = CarLinkApp(car_config, transport_factory=factory)

    assert app.connect_and_wait(timeout=2.0) is False
    assert app.sink.errors.latest.operation == "connect"


def test_connect_and_wait_times_out(car_config):
    app = CarLinkApp(car_config, transport_factory=FakeTransportFactory())

    assert app.connect_and_wait(timeout=0.05) is False
    assert app.connection.state == ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_run_tracks_health_until_stopped(car_config):
    factory = AutoConnectFactory()
    app = CarLinkApp(car_config, transport_factory=factory)

    task = asyncio.create_task(app.run())
    for _ in range(100):
        if factory.created and app.connection.is_connected:
            break
        await asyncio.sleep(0.01)

    transport = factory.latest
    transport.deliver(
        "iot-car/car-007/status", b'{"device_id":"car-007","status":"online"}'
    )
    transport.deliver("iot-car/car-007/telemetry", b'{"battery":77}')

    snapshot = {}
    for _ in range(100):
        snapshot = await app._health.snapshot()
        if snapshot["status"] == "ok" and len(snapshot["components"]) == 3:
            break
        await asyncio.sleep(0.01)

    assert snapshot["status"] == "ok"
    names = {component["name"] for component in snapshot["components"]}
    assert names == {"mqtt", "device", "telemetry"}

    app.request_stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert app.connection.state == ConnectionState.DISCONNECTED
    assert transport.close_calls == 1
    assert app.sink.telemetry.observer_count == 0


async def _wait_connected(app, factory) -> None:
    for _ in range(100):
        if factory.created and app.connection.is_connected:
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_disconnect_reset_is_not_counted_as_telemetry(car_config):
    factory = AutoConnectFactory()
    app = CarLinkApp(car_config, transport_factory=factory)

    task = asyncio.create_task(app.run())
    await _wait_connected(app, factory)

    factory.latest.lose()

    # Let the scheduled health updates for the drop and the reset run.
    await asyncio.sleep(0.1)
    snapshot = await app._health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}

    assert snapshot["status"] == "degraded"
    assert components["mqtt"]["detail"] == "disconnected"
    assert components["telemetry"]["detail"] == "no telemetry received"

    app.request_stop()
    assert await asyncio.wait_for(task, timeout=2.0) == 0


@pytest.mark.asyncio
async def test_run_exits_with_error_when_first_connect_fails(car_config):
    factory = FakeTransportFactory()
    factory.start_error = MQTTConnectionError("Connection refused")
    app = CarLinkApp(car_config, transport_factory=factory)

    assert await asyncio.wait_for(app.run(), timeout=2.0) == 1
    assert app.connection.state == ConnectionState.DISCONNECTED
    assert app.sink.errors.observer_count == 0


@pytest.mark.asyncio
async def test_run_exits_with_error_when_broker_refuses_first_session(car_config):
    factory = FakeTransportFactory()
    app = CarLinkApp(car_config, transport_factory=factory)

    task = asyncio.create_task(app.run())
    for _ in range(100):
        if factory.created:
            break
        await asyncio.sleep(0.01)
    factory.latest.fail("Not authorized")

    assert await asyncio.wait_for(task, timeout=2.0) == 1


def test_cli_show_config_masks_password(config_file, capsys):
    path = config_file("[broker]\nhost = broker.local\npassword = hunter2\n")

    assert cli.main(["-c", str(path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {path}" in output
    assert "[broker]" in output
    assert "host = broker.local" in output
    assert "hunter2" not in output


def test_cli_rejects_invalid_config(config_file):
    path = config_file("[broker]\nport = not-a-port\n")

    assert cli.main(["-c", str(path), "show-config"]) == 1


def test_cli_rejects_unknown_action(config_file):
    with pytest.raises(SystemExit):
        cli.main(["-c", str(config_file("")), "send", "jump"])


def _patch_app(monkeypatch, factory):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(
        cli,
        "CarLinkApp",
        lambda config: CarLinkApp(config, transport_factory=factory),
    )


def test_cli_send_publishes_command(monkeypatch, config_file):
    factory = AutoConnectFactory()
    _patch_app(monkeypatch, factory)
    path = config_file("[device]\ndevice_id = car-009\n")

    assert cli.main(["-c", str(path), "send", "backward", "--timeout", "1"]) == 0

    transport = factory.latest
    ((topic, payload, qos, _),) = transport.published
    assert topic == "iot-car/car-009/command"
    assert json.loads(payload)["action"] == "backward"
    assert qos == 1
    assert transport.close_calls == 1


def test_cli_send_fails_without_broker(monkeypatch, config_file):
    factory = FakeTransportFactory()
    factory.start_error = MQTTConnectionError("Connection refused")
    _patch_app(monkeypatch, factory)

    assert cli.main(["-c", str(config_file("")), "send", "stop"]) == 1


def test_cli_monitor_returns_run_exit_status(monkeypatch, config_file):
    monkeypatch.setattr(CarLinkApp, "start", classmethod(lambda cls, config: 1))

    assert cli.main(["-c", str(config_file("")), "monitor"]) == 1
