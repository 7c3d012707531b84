"""Configuration loader for iot-car-link.

The link itself never writes configuration; whatever owns the settings (a UI,
a config file) hands the resolved values in. This loader is what the command
line front end uses.
"""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .core.models import BrokerEndpoint


class ConfigError(ValueError):
    """Raised when the configuration file holds unusable values."""


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    keepalive: int = constants.DEFAULT_KEEPALIVE_SECONDS
    client_id_prefix: str = constants.DEFAULT_CLIENT_ID_PREFIX


@dataclass(slots=True)
class DeviceConfig:
    device_id: str = constants.DEFAULT_DEVICE_ID


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_min_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0
    telemetry_stale_seconds: float = 15.0


@dataclass(slots=True)
class SimulatorConfig:
    telemetry_interval_seconds: float = 5.0
    command_duration_seconds: float = 2.0
    firmware: str = constants.DEFAULT_SIMULATOR_FIRMWARE


@dataclass(slots=True)
class CarLinkConfig:
    broker: BrokerConfig
    device: DeviceConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    simulator: SimulatorConfig
    raw: ConfigParser
    path: Path

    def endpoint(self) -> BrokerEndpoint:
        try:
            return BrokerEndpoint(
                host=self.broker.host,
                port=self.broker.port,
                device_id=self.device.device_id,
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc


def _split_broker_host(value: str, port: int) -> tuple[str, int]:
    """Accept ``host``, ``host:port`` or ``tcp://host:port``."""

    if "://" not in value and ":" not in value:
        return value, port

    try:
        endpoint = BrokerEndpoint.from_url(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid broker host {value!r}: {exc}") from exc

    if "://" in value:
        has_port = ":" in value.split("://", 1)[1]
    else:
        has_port = True
    return endpoint.host, endpoint.port if has_port else port


def load_config(path: Optional[Path] = None) -> CarLinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "client_id_prefix": constants.DEFAULT_CLIENT_ID_PREFIX,
            },
            "device": {
                "device_id": constants.DEFAULT_DEVICE_ID,
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "reconnect_min_delay_seconds": "1.0",
                "reconnect_max_delay_seconds": "30.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
                "telemetry_stale_seconds": "15.0",
            },
            "simulator": {
                "telemetry_interval_seconds": "5.0",
                "command_duration_seconds": "2.0",
                "firmware": constants.DEFAULT_SIMULATOR_FIRMWARE,
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    try:
        port_value = parser.getint("broker", "port")
        host_value, port_value = _split_broker_host(
            parser.get("broker", "host").strip(), port_value
        )
        parser.set("broker", "host", host_value)
        parser.set("broker", "port", str(port_value))

        broker = BrokerConfig(
            host=host_value,
            port=port_value,
            username=parser.get("broker", "username", fallback=None) or None,
            password=parser.get("broker", "password", fallback=None) or None,
            keepalive=max(
                5, parser.getint("broker", "keepalive", fallback=constants.DEFAULT_KEEPALIVE_SECONDS)
            ),
            client_id_prefix=parser.get("broker", "client_id_prefix").strip()
            or constants.DEFAULT_CLIENT_ID_PREFIX,
        )

        device = DeviceConfig(
            device_id=parser.get("device", "device_id").strip()
            or constants.DEFAULT_DEVICE_ID,
        )

        log_path_value = parser.get("logging", "path", fallback="").strip()
        logging_config = LoggingConfig(
            level=parser.get("logging", "level", fallback="INFO"),
            path=Path(log_path_value).expanduser() if log_path_value else None,
            log_network=parser.getboolean("logging", "log_network", fallback=False),
        )

        min_delay = max(
            0.1,
            parser.getfloat("resilience", "reconnect_min_delay_seconds", fallback=1.0),
        )
        resilience = ResilienceConfig(
            reconnect_min_delay_seconds=min_delay,
            reconnect_max_delay_seconds=max(
                min_delay,
                parser.getfloat(
                    "resilience", "reconnect_max_delay_seconds", fallback=30.0
                ),
            ),
            health_enabled=parser.getboolean(
                "resilience", "health_enabled", fallback=False
            ),
            health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
            health_port=parser.getint("resilience", "health_port", fallback=0),
            telemetry_stale_seconds=max(
                1.0,
                parser.getfloat(
                    "resilience", "telemetry_stale_seconds", fallback=15.0
                ),
            ),
        )

        simulator = SimulatorConfig(
            telemetry_interval_seconds=max(
                0.1,
                parser.getfloat(
                    "simulator", "telemetry_interval_seconds", fallback=5.0
                ),
            ),
            command_duration_seconds=max(
                0.0,
                parser.getfloat(
                    "simulator", "command_duration_seconds", fallback=2.0
                ),
            ),
            firmware=parser.get(
                "simulator", "firmware", fallback=constants.DEFAULT_SIMULATOR_FIRMWARE
            ),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid configuration in {config_path}: {exc}") from exc

    config = CarLinkConfig(
        broker=broker,
        device=device,
        logging=logging_config,
        resilience=resilience,
        simulator=simulator,
        raw=parser,
        path=config_path,
    )
    # Fail early on an unusable endpoint.
    config.endpoint()
    return config
