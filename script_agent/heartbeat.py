"""Heartbeat scheduler for Script Agent."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from .connection import Link
from .protocol import heartbeat_frame
from .scheduler import PeriodicTask, Sleep
from .telemetry import HeartbeatSnapshot


logger = logging.getLogger(__name__)


@dataclass
class HeartbeatConfig:
    """Runtime heartbeat settings, adjustable by the controller."""
    interval_ms: int = 30000

    @property
    def interval(self) -> float:
        return self.interval_ms / 1000.0


class HeartbeatScheduler:
    """Sends a liveness frame, then waits one interval, for as long as the link is open.

    ``start()`` is called when a connection opens and ``stop()`` when it
    closes; there is never more than one loop at a time.
    """

    def __init__(
        self,
        device_id: str,
        link: Link,
        config: HeartbeatConfig,
        snapshot: Callable[[], HeartbeatSnapshot],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.device_id = device_id
        self.config = config
        self._link = link
        self._snapshot = snapshot
        self._loop = PeriodicTask(
            "heartbeat",
            self._beat,
            lambda: self.config.interval,
            run_immediately=True,
            sleep=sleep,
        )
        self.sent = 0

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> None:
        if self._loop.running:
            logger.debug("Heartbeat already running")
            return
        logger.info("Starting heartbeat every %dms", self.config.interval_ms)
        self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()

    async def _beat(self) -> None:
        if not self._link.is_open:
            logger.debug("Skipping heartbeat: connection not open")
            return
        snap = self._snapshot()
        if self._link.send(heartbeat_frame(self.device_id, snap.battery, snap.memory)):
            self.sent += 1
            logger.debug("Sent heartbeat")
