"""Shared fakes for agent tests."""

import asyncio
from typing import Callable, List, Optional

import pytest

from script_agent.config import Config
from script_agent.connection import Closed, Errored, Opened
from script_agent.engine import ScriptEngine, ScriptExit, ScriptHandle
from script_agent.telemetry import BatteryStatus, HeartbeatSnapshot, NetworkStatus


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Spin the event loop until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class FakeLink:
    """Stands in for the supervisor's outbound side."""

    def __init__(self, is_open: bool = True) -> None:
        self.is_open = is_open
        self.sent: List[str] = []

    def send(self, frame: str) -> bool:
        if not self.is_open:
            return False
        self.sent.append(frame)
        return True


class RecordingSleep:
    """Injected sleep that records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class GatedSleep:
    """Injected sleep that blocks until the test releases it."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self._gates: List[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        gate = asyncio.get_running_loop().create_future()
        self._gates.append(gate)
        await gate

    @property
    def waiting(self) -> int:
        return sum(1 for g in self._gates if not g.done())

    def release(self) -> None:
        for gate in self._gates:
            if not gate.done():
                gate.set_result(None)
                return
        raise AssertionError("nothing is sleeping")


class FakeHandle(ScriptHandle):
    def __init__(self, script_id: str, content: str, log) -> None:
        self.script_id = script_id
        self.content = content
        self.log = log
        self.forced = False
        self._exit: asyncio.Future = asyncio.get_running_loop().create_future()

    def complete(self) -> None:
        self._exit.set_result(ScriptExit(ok=True, returncode=0))

    def fault(self, error: str) -> None:
        self._exit.set_result(ScriptExit(ok=False, error=error, returncode=1))

    async def wait(self) -> ScriptExit:
        return await self._exit


class FakeEngine(ScriptEngine):
    """Deterministic engine: scripts run until the test completes or faults them."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []
        self.stopped: List[str] = []
        self.fail_next_run: Optional[Exception] = None

    async def run(self, script_id, content, log) -> FakeHandle:
        if self.fail_next_run is not None:
            error, self.fail_next_run = self.fail_next_run, None
            raise error
        handle = FakeHandle(script_id, content, log)
        self.handles.append(handle)
        return handle

    async def force_stop(self, handle) -> None:
        handle.forced = True
        self.stopped.append(handle.script_id)
        if not handle._exit.done():
            handle._exit.set_result(ScriptExit(ok=False, forced=True))

    def latest(self, script_id: str) -> FakeHandle:
        return [h for h in self.handles if h.script_id == script_id][-1]


class FakeTransport:
    """Scripted transport: each instance succeeds or fails its handshake."""

    def __init__(self, events, succeed: bool) -> None:
        self._events = events
        self._succeed = succeed
        self.is_open = False
        self.closed = False
        self.sent: List[str] = []
        self.token: Optional[str] = None

    async def open(self, url, device_id, token=None) -> None:
        self.token = token
        await asyncio.sleep(0)
        if self._succeed:
            self.is_open = True
            self._events.put_nowait(Opened(self))
        else:
            self._events.put_nowait(Errored(self, OSError("connection refused")))
            self._finish(1006, "connection refused")

    def send(self, frame: str) -> bool:
        if not self.is_open:
            return False
        self.sent.append(frame)
        return True

    def deliver(self, frame: str) -> None:
        from script_agent.connection import FrameReceived
        self._events.put_nowait(FrameReceived(self, frame))

    def drop(self, code: int = 1006, reason: str = "lost") -> None:
        self.is_open = False
        self._finish(code, reason)

    async def close(self) -> None:
        self.is_open = False
        self._finish(1000, "closed by agent")

    def _finish(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self._events.put_nowait(Closed(self, code, reason))


class TransportFactory:
    """Hands out FakeTransports following a success/failure plan."""

    def __init__(self, outcomes: Optional[List[bool]] = None, default: bool = True) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.created: List[FakeTransport] = []

    def __call__(self, events) -> FakeTransport:
        succeed = self.outcomes.pop(0) if self.outcomes else self.default
        transport = FakeTransport(events, succeed)
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


class FakeTelemetry:
    def __init__(self) -> None:
        self.battery_status: Optional[BatteryStatus] = BatteryStatus(percent=80.0, plugged=False)
        self.network_status = NetworkStatus(available=True, kind="wifi")

    def heartbeat_snapshot(self) -> HeartbeatSnapshot:
        battery = self.battery_status
        return HeartbeatSnapshot(battery=battery.percent if battery else None, memory=42.0)

    def device_stats(self) -> dict:
        return {"cpu": 1.0, "memory": 42.0, "battery": 80.0, "charging": False, "network": "wifi"}

    def battery(self) -> Optional[BatteryStatus]:
        return self.battery_status

    def network(self) -> NetworkStatus:
        return self.network_status


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.device.device_id = "device-test"
    cfg.device.credential_path = str(tmp_path / "credentials.json")
    cfg.logging.forward_level = None
    return cfg
