"""Telemetry and device information for Script Agent."""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

from .config import DeviceConfig


logger = logging.getLogger(__name__)


@dataclass
class HeartbeatSnapshot:
    """Battery and memory figures carried by every heartbeat."""
    battery: Optional[float]
    memory: Optional[float]


@dataclass
class BatteryStatus:
    percent: float
    plugged: bool


@dataclass
class NetworkStatus:
    available: bool
    kind: str  # wifi, ethernet, cellular, other, none


class TelemetryCollector:
    """Polls battery, memory, CPU and network state."""

    def heartbeat_snapshot(self) -> HeartbeatSnapshot:
        battery = self.battery()
        return HeartbeatSnapshot(
            battery=battery.percent if battery else None,
            memory=self._memory_percent(),
        )

    def device_stats(self) -> Dict[str, Any]:
        """Resource usage payload for DEVICE_STATS frames."""
        battery = self.battery()
        network = self.network()
        return {
            "cpu": psutil.cpu_percent(interval=None),
            "memory": self._memory_percent(),
            "battery": battery.percent if battery else None,
            "charging": battery.plugged if battery else None,
            "network": network.kind,
        }

    def battery(self) -> Optional[BatteryStatus]:
        """Battery state, or None on devices without one."""
        try:
            sensor = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError):
            return None
        if sensor is None:
            return None
        return BatteryStatus(
            percent=round(sensor.percent, 1),
            plugged=bool(sensor.power_plugged),
        )

    def network(self) -> NetworkStatus:
        """Whether any non-loopback interface is up, and what kind it is."""
        try:
            stats = psutil.net_if_stats()
        except OSError as e:
            logger.debug("Cannot read interface stats: %s", e)
            return NetworkStatus(available=False, kind="none")

        up = [name for name, st in stats.items() if st.isup and not _is_loopback(name)]
        if not up:
            return NetworkStatus(available=False, kind="none")
        return NetworkStatus(available=True, kind=_interface_kind(up))

    def _memory_percent(self) -> Optional[float]:
        try:
            return psutil.virtual_memory().percent
        except OSError:
            return None


def _is_loopback(name: str) -> bool:
    return name == "lo" or name.startswith("lo0") or name.lower().startswith("loopback")


def _interface_kind(names: list) -> str:
    for name in names:
        if name.startswith(("wl", "wifi", "Wi-Fi")):
            return "wifi"
    for name in names:
        if name.startswith(("eth", "en", "Ethernet")):
            return "ethernet"
    for name in names:
        if name.startswith(("rmnet", "ccmni", "wwan")):
            return "cellular"
    return "other"


def get_device_info(device: DeviceConfig) -> Dict[str, str]:
    """Registration payload for the authentication endpoint.

    Configured values win; anything left blank is filled in from the host.
    """
    return {
        "id": device.device_id,
        "model": device.model or _board_model() or platform.machine(),
        "brand": device.brand or platform.system(),
        "sdk": device.sdk or platform.release(),
        "resolution": device.resolution or "unknown",
    }


def _board_model() -> Optional[str]:
    """Board model string from the device tree, where the platform has one."""
    try:
        with open("/proc/device-tree/model", "r") as f:
            return f.read().strip("\x00 \n") or None
    except OSError:
        return None
