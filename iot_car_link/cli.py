"""Command-line interface for iot-car-link."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import CarLinkApp
from .config import CarLinkConfig, ConfigError, load_config
from .core.models import CarAction
from .logging import configure_logging
from .simulator import CarSimulator

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="MQTT remote control link for an IoT car"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "monitor", help="Stay connected and log telemetry and status updates"
    )

    send_parser = subparsers.add_parser("send", help="Send a single drive command")
    send_parser.add_argument(
        "action", choices=[action.value for action in CarAction], help="Drive action"
    )
    send_parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for the broker connection (default: 10)",
    )

    subparsers.add_parser("simulate", help="Run a simulated car against the broker")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _configure_logging(config: CarLinkConfig) -> None:
    configure_logging(
        config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )


def _send(config: CarLinkConfig, action: str, timeout: float) -> int:
    app = CarLinkApp(config)
    try:
        if not app.connect_and_wait(timeout):
            LOGGER.error(
                "Could not connect to %s within %.1fs",
                config.endpoint().broker_url,
                timeout,
            )
            return 1
        message = app.commands.send(action)
    finally:
        app.disconnect()

    if message is None:
        return 1
    LOGGER.info("Sent %s (%s)", message.action, message.command_id)
    return 0


def _simulate(config: CarLinkConfig) -> int:
    simulator = CarSimulator(config)
    try:
        simulator.run()
    except KeyboardInterrupt:
        LOGGER.info("Simulator received shutdown signal")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 1

    if args.command == "monitor":
        return CarLinkApp.start(config)

    if args.command == "send":
        _configure_logging(config)
        return _send(config, args.action, args.timeout)

    if args.command == "simulate":
        _configure_logging(config)
        return _simulate(config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
