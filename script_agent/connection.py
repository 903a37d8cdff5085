"""WebSocket transport for Script Agent.

A ``Transport`` owns exactly one physical connection to the controller. It has
no retry policy of its own: everything that happens to the socket is reported
as a ``ConnectionEvent`` on the owner's queue and the owner decides what to do.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from .errors import TransportFailure


logger = logging.getLogger(__name__)

# Close code reported when the handshake never completed or the socket died
# without a close frame.
ABNORMAL_CLOSURE = 1006


class ConnectionState(str, Enum):
    """Transport connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class Opened:
    transport: "Transport"


@dataclass(frozen=True)
class FrameReceived:
    transport: "Transport"
    data: Union[str, bytes]


@dataclass(frozen=True)
class Closed:
    transport: "Transport"
    code: int
    reason: str


@dataclass(frozen=True)
class Errored:
    transport: "Transport"
    error: BaseException


ConnectionEvent = Union[Opened, FrameReceived, Closed, Errored]

Connector = Callable[..., Awaitable[Any]]


class Link(Protocol):
    """Outbound side of whatever connection is currently active."""

    @property
    def is_open(self) -> bool:
        ...

    def send(self, frame: str) -> bool:
        ...


def build_headers(device_id: str, token: Optional[str]) -> Dict[str, str]:
    """Handshake headers identifying the device and carrying the credential."""
    headers = {"Device-ID": device_id}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class Transport:
    """One bidirectional WebSocket channel to the controller."""

    def __init__(
        self,
        events: "asyncio.Queue[ConnectionEvent]",
        *,
        open_timeout: Optional[float] = 10.0,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 20.0,
        connector: Connector = ws_connect,
    ) -> None:
        self._events = events
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._connector = connector

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._closed_emitted = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    async def open(self, url: str, device_id: str, token: Optional[str] = None) -> None:
        """Perform the handshake and start pumping frames.

        Never raises for network failures: a failed handshake is reported as
        ``Errored`` followed by ``Closed``.
        """
        if self._state != ConnectionState.DISCONNECTED or self._closed_emitted:
            raise RuntimeError("Transport objects are single-use")

        self._state = ConnectionState.CONNECTING
        logger.info("Connecting to %s", url)

        try:
            self._ws = await self._connector(
                url,
                additional_headers=build_headers(device_id, token),
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
            )
        except asyncio.CancelledError:
            self._finish(ABNORMAL_CLOSURE, "connect cancelled")
            raise
        except Exception as e:
            logger.warning("Connection to %s failed: %s", url, e)
            self._emit(Errored(self, TransportFailure(f"handshake with {url} failed: {e}")))
            self._finish(ABNORMAL_CLOSURE, str(e) or type(e).__name__)
            return

        if self._state != ConnectionState.CONNECTING:
            # close() was called while the handshake was in flight
            await self._ws.close()
            self._finish(ABNORMAL_CLOSURE, "closed during handshake")
            return

        self._state = ConnectionState.OPEN
        self._emit(Opened(self))
        self._reader = asyncio.create_task(self._receive_loop())
        self._writer = asyncio.create_task(self._send_loop())

    def send(self, frame: str) -> bool:
        """Queue a frame for sending. Returns False (and drops it) if not open."""
        if not self.is_open:
            logger.debug("Dropping outbound frame: connection is %s", self._state.value)
            return False
        self._outbox.put_nowait(frame)
        return True

    async def close(self) -> None:
        """Tear down the socket and its pump tasks. Safe to call repeatedly."""
        if self._closed_emitted:
            return

        self._state = ConnectionState.CLOSING
        writer, reader = self._writer, self._reader

        if writer and not writer.done():
            await self._drain_outbox(writer)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        try:
            if self._ws is not None:
                await self._ws.close()
        except Exception as e:
            logger.debug("Error closing socket: %s", e)

        if reader and not reader.done() and reader is not asyncio.current_task():
            try:
                await asyncio.wait_for(reader, timeout=self._open_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        self._finish(*self._close_status("closed by agent"))

    async def _drain_outbox(self, writer: asyncio.Task) -> None:
        """Let the writer send what ``send()`` already accepted, within ``open_timeout``."""
        drained = asyncio.ensure_future(self._outbox.join())
        try:
            await asyncio.wait(
                {drained, writer},
                timeout=self._open_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            drained.cancel()
        if not self._outbox.empty():
            logger.warning("Closing with %d unsent frames", self._outbox.qsize())

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _receive_loop(self) -> None:
        try:
            async for data in self._ws:
                self._emit(FrameReceived(self, data))
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            logger.warning("Connection closed: %s", e)
            self._emit(Errored(self, TransportFailure(f"connection closed: {e}")))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Receive error: %s", e)
            self._emit(Errored(self, TransportFailure(f"receive failed: {e}")))
        finally:
            if self._writer and not self._writer.done():
                self._writer.cancel()
            self._finish(*self._close_status("connection lost"))

    async def _send_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self._ws.send(frame)
            except ConnectionClosed:
                # The receive loop reports the closure
                return
            except Exception as e:
                logger.error("Error sending frame: %s", e)
            finally:
                self._outbox.task_done()

    def _close_status(self, default_reason: str) -> tuple:
        code = getattr(self._ws, "close_code", None)
        reason = getattr(self._ws, "close_reason", None)
        return (code if code is not None else ABNORMAL_CLOSURE, reason or default_reason)

    def _finish(self, code: int, reason: str) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self._state = ConnectionState.DISCONNECTED
        self._emit(Closed(self, code, reason))

    def _emit(self, event: ConnectionEvent) -> None:
        self._events.put_nowait(event)
