import pytest

from iot_car_link.topics import (
    COMMAND_QOS,
    SUBSCRIPTION_QOS,
    Channel,
    classify,
    topics_for,
)


def test_topics_for_device():
    topics = topics_for("car-001")

    assert topics.telemetry == "iot-car/car-001/telemetry"
    assert topics.status == "iot-car/car-001/status"
    assert topics.command == "iot-car/car-001/command"
    assert topics.for_channel(Channel.STATUS) == topics.status


@pytest.mark.parametrize(
    "topic, expected",
    [
        ("iot-car/car-001/telemetry", Channel.TELEMETRY),
        ("iot-car/car-001/status", Channel.STATUS),
        ("iot-car/car-001/command", Channel.COMMAND),
        ("bridge/iot-car/car-001/telemetry", Channel.TELEMETRY),
        ("iot-car/car-001/response", None),
        ("iot-car/car-001/test", None),
        ("", None),
    ],
)
def test_classify(topic, expected):
    assert classify(topic) == expected


def test_delivery_levels():
    assert SUBSCRIPTION_QOS == {Channel.TELEMETRY: 0, Channel.STATUS: 1}
    assert COMMAND_QOS == 1
