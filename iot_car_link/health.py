"""Health reporting for a running car link.

The reporter answers one question: is the car reachable and talking? That
takes three things at once: a live broker session, a device that announced
itself online, and telemetry that is not older than
``telemetry_stale_after`` seconds. ``/healthz`` answers 200 only when all
three hold.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from aiohttp import web

from .core.models import ConnectionState, DeviceStatus, TelemetryReading

LOGGER = logging.getLogger(__name__)

MQTT = "mqtt"
DEVICE = "device"
TELEMETRY = "telemetry"


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks connection, device presence and telemetry freshness."""

    def __init__(
        self,
        *,
        telemetry_stale_after: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = telemetry_stale_after
        self._clock = clock
        self._lock = asyncio.Lock()
        self._status: Dict[str, ComponentStatus] = {
            MQTT: ComponentStatus(MQTT, False, ConnectionState.DISCONNECTED.value),
            DEVICE: ComponentStatus(DEVICE, False, "unknown"),
        }
        self._last_reading: Optional[TelemetryReading] = None
        self._last_reading_at: Optional[float] = None

    async def set_connection_state(self, state: ConnectionState) -> None:
        await self.update(MQTT, state == ConnectionState.CONNECTED, state.value)

    async def set_device_status(self, status: DeviceStatus) -> None:
        detail = status.status
        if status.firmware_version:
            detail = f"{detail} ({status.firmware_version})"
        await self.update(DEVICE, status.is_online, detail)

    async def record_telemetry(self, reading: TelemetryReading) -> None:
        async with self._lock:
            self._last_reading = reading
            self._last_reading_at = self._clock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())
            entries.append(self._telemetry_status())

        components = [status.as_dict() for status in entries]
        healthy = all(item["healthy"] for item in components)
        return {"status": "ok" if healthy else "degraded", "components": components}

    def _telemetry_status(self) -> ComponentStatus:
        # Caller holds the lock.
        if self._last_reading is None or self._last_reading_at is None:
            return ComponentStatus(TELEMETRY, False, "no telemetry received")

        age = self._clock() - self._last_reading_at
        observed = self._last_reading.observed_at
        if age > self._stale_after:
            return ComponentStatus(
                TELEMETRY,
                False,
                f"stale: last reading {age:.0f}s ago",
                updated_at=observed,
            )
        return ComponentStatus(
            TELEMETRY,
            True,
            f"battery {self._last_reading.battery_display}",
            updated_at=observed,
        )


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        if self._site is not None:
            with contextlib.suppress(RuntimeError):
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
