"""Configuration loader for Script Agent."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_CONFIG_PATHS = [
    Path("/etc/script-agent/agent.config.json"),
    Path.home() / ".config" / "script-agent" / "agent.config.json",
    Path("agent.config.json"),
]

DEFAULT_CREDENTIAL_PATH = Path.home() / ".config" / "script-agent" / "credentials.json"


@dataclass
class ControllerConfig:
    """Controller endpoints and transport settings."""
    url: str = "ws://localhost:8080/ws"
    auth_url: str = "http://localhost:8080/auth/device"
    auth_timeout: float = 10.0
    auth_cooldown: float = 30.0  # min seconds between AUTH_REQUIRED handling
    open_timeout: float = 10.0
    ping_interval: Optional[float] = 20.0
    ping_timeout: Optional[float] = 20.0


@dataclass
class ReconnectConfig:
    """Exponential backoff settings for the reconnect supervisor."""
    base_ms: int = 2000
    cap_ms: int = 30000
    max_attempts: int = 5


@dataclass
class DeviceConfig:
    """Device identity reported to the controller."""
    device_id: str = ""
    model: str = ""
    brand: str = ""
    sdk: str = ""
    resolution: str = ""
    credential_path: str = str(DEFAULT_CREDENTIAL_PATH)


@dataclass
class TelemetryConfig:
    """Heartbeat, stats and device protection settings."""
    heartbeat_interval_ms: int = 30000
    stats_interval: float = 60.0
    monitor_interval: float = 15.0
    battery_low_percent: float = 15.0


@dataclass
class LogBufferConfig:
    """Log batching and retention."""
    batch_size: int = 50
    flush_interval: float = 10.0
    max_retained: int = 500


@dataclass
class ExecutorConfig:
    """Script execution settings."""
    python: str = ""  # empty = current interpreter
    stop_timeout: float = 5.0
    critical_scripts: List[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    forward_level: Optional[str] = "INFO"  # None = don't forward to controller


@dataclass
class Config:
    """Root configuration object."""
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    logs: LogBufferConfig = field(default_factory=LogBufferConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        controller_data = data.get("controller", {})
        reconnect_data = data.get("reconnect", {})
        device_data = data.get("device", {})
        telemetry_data = data.get("telemetry", {})
        logs_data = data.get("logs", {})
        executor_data = data.get("executor", {})
        logging_data = data.get("logging", {})

        return cls(
            controller=ControllerConfig(
                url=controller_data.get("url", ControllerConfig.url),
                auth_url=controller_data.get("auth_url", ControllerConfig.auth_url),
                auth_timeout=controller_data.get("auth_timeout", ControllerConfig.auth_timeout),
                auth_cooldown=controller_data.get("auth_cooldown", ControllerConfig.auth_cooldown),
                open_timeout=controller_data.get("open_timeout", ControllerConfig.open_timeout),
                ping_interval=controller_data.get("ping_interval", ControllerConfig.ping_interval),
                ping_timeout=controller_data.get("ping_timeout", ControllerConfig.ping_timeout),
            ),
            reconnect=ReconnectConfig(
                base_ms=reconnect_data.get("base_ms", ReconnectConfig.base_ms),
                cap_ms=reconnect_data.get("cap_ms", ReconnectConfig.cap_ms),
                max_attempts=reconnect_data.get("max_attempts", ReconnectConfig.max_attempts),
            ),
            device=DeviceConfig(
                device_id=device_data.get("device_id", ""),
                model=device_data.get("model", ""),
                brand=device_data.get("brand", ""),
                sdk=str(device_data.get("sdk", "")),
                resolution=device_data.get("resolution", ""),
                credential_path=device_data.get("credential_path", DeviceConfig.credential_path),
            ),
            telemetry=TelemetryConfig(
                heartbeat_interval_ms=telemetry_data.get("heartbeat_interval_ms", TelemetryConfig.heartbeat_interval_ms),
                stats_interval=telemetry_data.get("stats_interval", TelemetryConfig.stats_interval),
                monitor_interval=telemetry_data.get("monitor_interval", TelemetryConfig.monitor_interval),
                battery_low_percent=telemetry_data.get("battery_low_percent", TelemetryConfig.battery_low_percent),
            ),
            logs=LogBufferConfig(
                batch_size=logs_data.get("batch_size", LogBufferConfig.batch_size),
                flush_interval=logs_data.get("flush_interval", LogBufferConfig.flush_interval),
                max_retained=logs_data.get("max_retained", LogBufferConfig.max_retained),
            ),
            executor=ExecutorConfig(
                python=executor_data.get("python", ""),
                stop_timeout=executor_data.get("stop_timeout", ExecutorConfig.stop_timeout),
                critical_scripts=executor_data.get("critical_scripts", []),
            ),
            logging=LoggingConfig(
                level=logging_data.get("level", LoggingConfig.level),
                file=logging_data.get("file"),
                format=logging_data.get("format", LoggingConfig.format),
                forward_level=logging_data.get("forward_level", LoggingConfig.forward_level),
            ),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load configuration from file or environment."""
        # Check explicit path
        if path and path.exists():
            return cls._load_file(path)

        # Check environment variable
        env_path = os.environ.get("SCRIPT_AGENT_CONFIG")
        if env_path:
            return cls._load_file(Path(env_path))

        # Check default locations
        for default_path in DEFAULT_CONFIG_PATHS:
            if default_path.exists():
                return cls._load_file(default_path)

        # Return defaults with environment overrides
        return cls._from_environment()

    @classmethod
    def _load_file(cls, path: Path) -> "Config":
        """Load config from JSON file."""
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        config = cls.from_dict(data)
        return cls._apply_environment_overrides(config)

    @classmethod
    def _from_environment(cls) -> "Config":
        """Create config from environment variables only."""
        return cls._apply_environment_overrides(cls())

    @classmethod
    def _apply_environment_overrides(cls, config: "Config") -> "Config":
        """Override config values from environment variables."""
        # Controller settings
        if url := os.environ.get("SCRIPT_AGENT_CONTROLLER_URL"):
            config.controller.url = url
        if auth_url := os.environ.get("SCRIPT_AGENT_AUTH_URL"):
            config.controller.auth_url = auth_url

        # Device settings
        if device_id := os.environ.get("SCRIPT_AGENT_DEVICE_ID"):
            config.device.device_id = device_id

        # Telemetry settings
        if heartbeat := os.environ.get("SCRIPT_AGENT_HEARTBEAT_INTERVAL"):
            try:
                config.telemetry.heartbeat_interval_ms = int(heartbeat)
            except ValueError:
                pass

        # Logging
        if log_level := os.environ.get("SCRIPT_AGENT_LOG_LEVEL"):
            config.logging.level = log_level

        # Auto-generate device_id if not set
        if not config.device.device_id:
            config.device.device_id = _generate_device_id()

        return config


def _generate_device_id() -> str:
    """Generate a stable device ID from hardware."""
    import uuid
    import hashlib

    # Board serial, where the platform exposes one
    try:
        with open("/proc/cpuinfo", "r") as f:
            for line in f:
                if line.startswith("Serial"):
                    serial = line.split(":")[1].strip()
                    return f"device-{serial[-8:]}"
    except (FileNotFoundError, IndexError):
        pass

    # Fallback to MAC address hash
    mac = uuid.getnode()
    mac_hash = hashlib.sha256(str(mac).encode()).hexdigest()[:8]
    return f"device-{mac_hash}"
