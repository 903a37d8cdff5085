"""Device monitoring for Script Agent.

Two loops: a stats reporter that sends DEVICE_STATS while connected, and a
watcher that polls battery and network state to apply the low-battery
protection and to revive the connection once the network comes back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .config import TelemetryConfig
from .connection import Link
from .protocol import device_stats_frame
from .scheduler import PeriodicTask, Sleep
from .telemetry import TelemetryCollector


logger = logging.getLogger(__name__)


class DeviceMonitor:
    """Periodic device stats and resource protections."""

    def __init__(
        self,
        device_id: str,
        link: Link,
        telemetry: TelemetryCollector,
        config: TelemetryConfig,
        stop_non_critical: Callable[[Iterable[str]], Awaitable[List[str]]],
        critical_scripts: Iterable[str] = (),
        revive: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.device_id = device_id
        self.config = config
        self._link = link
        self._telemetry = telemetry
        self._stop_non_critical = stop_non_critical
        self._critical = list(critical_scripts)
        self._revive = revive

        self._stats = PeriodicTask("device-stats", self.report_stats, config.stats_interval, sleep=sleep)
        self._watch = PeriodicTask(
            "device-watch", self.check, config.monitor_interval, run_immediately=True, sleep=sleep
        )
        self._battery_low = False
        self._network_up: Optional[bool] = None

    def start(self) -> None:
        self._stats.start()
        self._watch.start()

    async def stop(self) -> None:
        await self._stats.stop()
        await self._watch.stop()

    async def report_stats(self) -> bool:
        if not self._link.is_open:
            return False
        stats = self._telemetry.device_stats()
        return self._link.send(device_stats_frame(self.device_id, stats))

    async def check(self) -> None:
        await self.check_battery()
        await self.check_network()

    async def check_battery(self) -> List[str]:
        """Stop non-critical scripts when the battery first runs low."""
        battery = self._telemetry.battery()
        low = (
            battery is not None
            and not battery.plugged
            and battery.percent < self.config.battery_low_percent
        )
        if not low:
            self._battery_low = False
            return []
        if self._battery_low:
            return []

        self._battery_low = True
        logger.warning("Battery low (%.0f%%), pausing non-critical scripts", battery.percent)
        stopped = await self._stop_non_critical(self._critical)
        if stopped:
            logger.info("Stopped for low battery: %s", ", ".join(stopped))
        return stopped

    async def check_network(self) -> bool:
        """Ask for a reconnect when the network goes from down to up."""
        available = self._telemetry.network().available
        previous, self._network_up = self._network_up, available
        if previous is False and available and self._revive is not None:
            logger.info("Network restored, reconnecting")
            await self._revive("network restored")
            return True
        return False
