"""Reconnect supervisor for Script Agent.

The supervisor is the only component that creates or replaces the transport.
All lifecycle events flow through one queue and are consumed by a single
control loop, so every state transition and its side effects happen in one
place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from .config import ControllerConfig, ReconnectConfig
from .connection import (
    Closed,
    ConnectionEvent,
    Errored,
    FrameReceived,
    Opened,
    Transport,
)
from .errors import RetryExhausted
from .scheduler import Sleep


logger = logging.getLogger(__name__)

Listener = Callable[..., Union[None, Awaitable[None]]]
TransportFactory = Callable[["asyncio.Queue[ConnectionEvent]"], Transport]
TokenSource = Callable[[], Optional[str]]


class SupervisorState(str, Enum):
    """Reconnect supervisor state."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    DISCONNECTED = "disconnected"
    GIVEN_UP = "given_up"


@dataclass
class RetryState:
    attempt: int = 0
    last_failure_at: Optional[float] = None


def backoff_delay(attempt: int, base_ms: int = 2000, cap_ms: int = 30000) -> int:
    """Delay in milliseconds before the retry that follows failure number ``attempt``."""
    return min(cap_ms, base_ms * (2 ** attempt))


class ReconnectSupervisor:
    """Keeps one connection to the controller alive with capped exponential backoff."""

    def __init__(
        self,
        controller: ControllerConfig,
        reconnect: ReconnectConfig,
        device_id: str,
        token_source: TokenSource,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.controller = controller
        self.reconnect = reconnect
        self.device_id = device_id
        self._token_source = token_source
        self._transport_factory = transport_factory or self._default_transport
        self._sleep = sleep

        self._events: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._state = SupervisorState.IDLE
        self._retry = RetryState()
        self._transport: Optional[Transport] = None
        self._attempt_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

        self._on_open: List[Listener] = []
        self._on_close: List[Listener] = []
        self._on_frame: List[Listener] = []
        self._on_state: List[Listener] = []

    # Read-only views

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def retry(self) -> RetryState:
        return replace(self._retry)

    @property
    def is_open(self) -> bool:
        return (
            self._state == SupervisorState.OPEN
            and self._transport is not None
            and self._transport.is_open
        )

    def send(self, frame: str) -> bool:
        """Send on the active connection; dropped (returns False) if none is open."""
        transport = self._transport
        if transport is None or self._state != SupervisorState.OPEN:
            logger.debug("Dropping outbound frame: no open connection")
            return False
        return transport.send(frame)

    # Listener registration

    def on_open(self, listener: Listener) -> None:
        self._on_open.append(listener)

    def on_close(self, listener: Listener) -> None:
        self._on_close.append(listener)

    def on_frame(self, listener: Listener) -> None:
        self._on_frame.append(listener)

    def on_state(self, listener: Listener) -> None:
        self._on_state.append(listener)

    # Lifecycle

    async def start(self) -> None:
        """Start the control loop and make the first connection attempt."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run(), name="reconnect-supervisor")
        self._schedule_attempt(0)
        logger.info("Reconnect supervisor started")

    async def stop(self) -> None:
        """Cancel pending attempts, close the connection and stop the loop."""
        self._running = False
        self._cancel_attempt()
        await self._drop_transport("agent shutting down")

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self._set_state(SupervisorState.IDLE)
        logger.info("Reconnect supervisor stopped")

    async def request_reconnect(self, reason: str = "requested") -> None:
        """Explicit revival: drop the current connection and connect now.

        Works from every state, including ``GIVEN_UP``, and resets the retry
        counter so automatic retries are available again.
        """
        if not self._running:
            return
        logger.info("Reconnect requested (%s)", reason)
        self._cancel_attempt()
        self._retry = RetryState()
        await self._drop_transport(reason)
        self._schedule_attempt(0)

    async def revive(self, reason: str = "revive") -> bool:
        """Reconnect only if there is no live or in-progress connection."""
        if self._state in (SupervisorState.OPEN, SupervisorState.CONNECTING):
            return False
        await self.request_reconnect(reason)
        return True

    # Control loop

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error handling %s event", type(event).__name__)

    async def _handle_event(self, event: ConnectionEvent) -> None:
        if event.transport is not self._transport:
            logger.debug("Ignoring %s from a retired connection", type(event).__name__)
            return

        if isinstance(event, Opened):
            self._retry = RetryState()
            self._set_state(SupervisorState.OPEN)
            logger.info("Connected to controller")
            await self._notify(self._on_open)
        elif isinstance(event, FrameReceived):
            await self._notify(self._on_frame, event.data)
        elif isinstance(event, Errored):
            logger.warning("Transport error: %s", event.error)
        elif isinstance(event, Closed):
            was_open = self._state == SupervisorState.OPEN
            self._transport = None
            logger.info("Connection closed: %s-%s", event.code, event.reason)
            if was_open:
                await self._notify(self._on_close, event.code, event.reason)
            self._handle_disconnect()

    def _handle_disconnect(self) -> None:
        self._set_state(SupervisorState.DISCONNECTED)
        if not self._running:
            return

        self._retry.last_failure_at = time.time()
        if self._retry.attempt >= self.reconnect.max_attempts:
            self._set_state(SupervisorState.GIVEN_UP)
            logger.error(
                "%s; waiting for an explicit reconnect",
                RetryExhausted(f"gave up after {self._retry.attempt} reconnect attempts"),
            )
            return

        delay = backoff_delay(self._retry.attempt, self.reconnect.base_ms, self.reconnect.cap_ms)
        self._retry.attempt += 1
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay / 1000.0,
            self._retry.attempt,
            self.reconnect.max_attempts,
        )
        self._schedule_attempt(delay)

    def _schedule_attempt(self, delay_ms: int) -> None:
        self._cancel_attempt()
        self._attempt_task = asyncio.create_task(self._attempt(delay_ms), name="connect-attempt")

    def _cancel_attempt(self) -> None:
        task, self._attempt_task = self._attempt_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _attempt(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000.0)
        if not self._running:
            return

        transport = self._transport_factory(self._events)
        self._transport = transport
        self._set_state(SupervisorState.CONNECTING)
        await transport.open(self.controller.url, self.device_id, self._token_source())

    async def _drop_transport(self, reason: str) -> None:
        """Retire the current transport without going through the retry path."""
        transport, self._transport = self._transport, None
        if transport is None:
            return
        if self._state == SupervisorState.OPEN:
            await self._notify(self._on_close, 1000, reason)
        self._set_state(SupervisorState.DISCONNECTED)
        await transport.close()

    def _default_transport(self, events: "asyncio.Queue[ConnectionEvent]") -> Transport:
        return Transport(
            events,
            open_timeout=self.controller.open_timeout,
            ping_interval=self.controller.ping_interval,
            ping_timeout=self.controller.ping_timeout,
        )

    def _set_state(self, state: SupervisorState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.debug("Supervisor %s -> %s", previous.value, state.value)
        for listener in list(self._on_state):
            try:
                listener(previous, state)
            except Exception:
                logger.exception("Error in state listener")

    async def _notify(self, listeners: List[Listener], *args: Any) -> None:
        for listener in list(listeners):
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in connection listener")
