"""Wire protocol: message types, inbound decoding and outbound frames.

Every frame is a UTF-8 JSON object with a string ``type`` discriminant. Inbound
frames decode into one of the command dataclasses below; anything that is not
a routable command becomes an ``UnknownMessage`` so the dispatcher can drop it.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedMessage


SYSTEM_SCRIPT_ID = "SYSTEM"


class MessageType(str, Enum):
    """Frame discriminants understood by the controller."""
    SCRIPT_PUSH = "SCRIPT_PUSH"
    LOG = "LOG"
    STATUS_UPDATE = "STATUS_UPDATE"
    SCRIPT_RESULT = "SCRIPT_RESULT"
    SCREENSHOT = "SCREENSHOT"
    SCREENSHOT_RESULT = "SCREENSHOT_RESULT"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    RUN_SCRIPT = "RUN_SCRIPT"
    STOP_SCRIPT = "STOP_SCRIPT"
    DEVICE_REBOOT = "DEVICE_REBOOT"
    HEARTBEAT_ACK = "HEARTBEAT_ACK"
    CONFIG_UPDATE = "CONFIG_UPDATE"
    HEARTBEAT = "HEARTBEAT"
    DEVICE_STATS = "DEVICE_STATS"


_KNOWN_TYPES = {m.value for m in MessageType}


# Inbound commands


@dataclass(frozen=True)
class AuthRequired:
    pass


@dataclass(frozen=True)
class RunScript:
    script_id: str
    content: str


@dataclass(frozen=True)
class StopScript:
    script_id: str


@dataclass(frozen=True)
class DeviceReboot:
    pass


@dataclass(frozen=True)
class HeartbeatAck:
    pass


@dataclass(frozen=True)
class ConfigUpdate:
    heartbeat_interval_ms: Optional[int] = None
    ignored_keys: tuple = ()


@dataclass(frozen=True)
class UnknownMessage:
    msg_type: str
    known: bool = False  # a valid discriminant this agent does not act on


Command = Union[
    AuthRequired,
    RunScript,
    StopScript,
    DeviceReboot,
    HeartbeatAck,
    ConfigUpdate,
    UnknownMessage,
]


def decode_frame(raw: Union[str, bytes]) -> Command:
    """Parse a raw frame into a command.

    Raises:
        MalformedMessage: if the frame is not a JSON object with a string
            ``type`` or a routable command is missing required fields.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"frame is not valid UTF-8: {e}", raw) from e

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedMessage(f"invalid JSON: {e}", raw) from e

    if not isinstance(data, dict):
        raise MalformedMessage("frame is not a JSON object", raw)

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("missing or non-string 'type'", raw)

    decoder = _DECODERS.get(msg_type)
    if decoder is None:
        known = msg_type in _KNOWN_TYPES
        return UnknownMessage(msg_type=msg_type, known=known)
    return decoder(data)


def _require_str(data: Dict[str, Any], key: str, msg_type: str, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise MalformedMessage(f"{msg_type}: '{key}' must be a non-empty string", data)
    return value


def _decode_run_script(data: Dict[str, Any]) -> RunScript:
    # Older controllers nest the script under "script"
    body = data.get("script", data)
    if not isinstance(body, dict):
        raise MalformedMessage("RUN_SCRIPT: 'script' must be an object", data)
    return RunScript(
        script_id=_require_str(body, "id", "RUN_SCRIPT"),
        content=_require_str(body, "content", "RUN_SCRIPT", allow_empty=True),
    )


def _decode_stop_script(data: Dict[str, Any]) -> StopScript:
    key = "scriptId" if "scriptId" in data else "id"
    return StopScript(script_id=_require_str(data, key, "STOP_SCRIPT"))


def _decode_config_update(data: Dict[str, Any]) -> ConfigUpdate:
    body = data.get("config", data)
    if not isinstance(body, dict):
        raise MalformedMessage("CONFIG_UPDATE: 'config' must be an object", data)

    interval = body.get("heartbeatInterval")
    if interval is not None:
        if isinstance(interval, bool) or not isinstance(interval, (int, float)):
            raise MalformedMessage("CONFIG_UPDATE: 'heartbeatInterval' must be a number", data)
        if not math.isfinite(interval):
            raise MalformedMessage("CONFIG_UPDATE: 'heartbeatInterval' must be finite", data)
        interval = int(interval)
        if interval <= 0:
            raise MalformedMessage("CONFIG_UPDATE: 'heartbeatInterval' must be at least 1ms", data)

    ignored = tuple(
        sorted(k for k in body if k not in ("type", "config", "heartbeatInterval"))
    )
    return ConfigUpdate(heartbeat_interval_ms=interval, ignored_keys=ignored)


_DECODERS = {
    MessageType.AUTH_REQUIRED.value: lambda data: AuthRequired(),
    MessageType.RUN_SCRIPT.value: _decode_run_script,
    MessageType.STOP_SCRIPT.value: _decode_stop_script,
    MessageType.DEVICE_REBOOT.value: lambda data: DeviceReboot(),
    MessageType.HEARTBEAT_ACK.value: lambda data: HeartbeatAck(),
    MessageType.CONFIG_UPDATE.value: _decode_config_update,
}


# Outbound frames


def iso_timestamp(ts: Optional[float] = None) -> str:
    """Format an epoch timestamp the way the controller expects."""
    when = datetime.fromtimestamp(ts if ts is not None else time.time(), tz=timezone.utc)
    return when.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogRecord:
    """A single log line attributed to a script (or ``SYSTEM``)."""
    device_id: str
    script_id: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "scriptId": self.script_id,
            "content": self.content,
            "timestamp": iso_timestamp(self.timestamp),
        }


def encode(msg_type: MessageType, **fields: Any) -> str:
    return json.dumps({"type": msg_type.value, **fields})


def heartbeat_frame(device_id: str, battery: Optional[float], memory: Optional[float]) -> str:
    return encode(
        MessageType.HEARTBEAT,
        deviceId=device_id,
        battery=battery,
        memory=memory,
        timestamp=iso_timestamp(),
    )


def log_batch_frame(device_id: str, records: List[LogRecord]) -> str:
    return encode(
        MessageType.LOG,
        deviceId=device_id,
        logs=[record.to_dict() for record in records],
    )


def device_stats_frame(device_id: str, stats: Dict[str, Any]) -> str:
    return encode(MessageType.DEVICE_STATS, deviceId=device_id, stats=stats)


def script_result_frame(device_id: str, result: Dict[str, Any]) -> str:
    return encode(MessageType.SCRIPT_RESULT, deviceId=device_id, **result)
