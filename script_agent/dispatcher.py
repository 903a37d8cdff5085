"""Inbound message dispatcher for Script Agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set, Union

from .auth import AuthenticationCache, DeviceAuthenticator
from .errors import AuthenticationFailure, MalformedMessage
from .executor import ExecutionManager
from .heartbeat import HeartbeatConfig
from .protocol import (
    AuthRequired,
    Command,
    ConfigUpdate,
    DeviceReboot,
    HeartbeatAck,
    RunScript,
    StopScript,
    UnknownMessage,
    decode_frame,
)


logger = logging.getLogger(__name__)

Reconnect = Callable[[str], Awaitable[Any]]
Reboot = Callable[[], Awaitable[Any]]


class MessageDispatcher:
    """Decodes inbound frames and routes each command to its handler.

    Malformed frames are logged and dropped without touching any state.
    Handlers that would block the connection's control loop (authentication,
    reboot) run as background tasks.
    """

    def __init__(
        self,
        executor: ExecutionManager,
        heartbeat: HeartbeatConfig,
        credentials: AuthenticationCache,
        authenticator: DeviceAuthenticator,
        device_info: Callable[[], Dict[str, Any]],
        reconnect: Reconnect,
        reboot: Reboot,
    ) -> None:
        self.executor = executor
        self.heartbeat = heartbeat
        self.credentials = credentials
        self.authenticator = authenticator
        self._device_info = device_info
        self._reconnect = reconnect
        self._reboot = reboot
        self._background: Set[asyncio.Task] = set()
        self._auth_task: Optional[asyncio.Task] = None
        self._handlers: Dict[type, Callable[[Any], Awaitable[None]]] = {
            AuthRequired: self._handle_auth_required,
            RunScript: self._handle_run_script,
            StopScript: self._handle_stop_script,
            DeviceReboot: self._handle_reboot,
            HeartbeatAck: self._handle_heartbeat_ack,
            ConfigUpdate: self._handle_config_update,
        }

        self.malformed_count = 0

    async def handle(self, raw: Union[str, bytes]) -> Optional[Command]:
        """Process one inbound frame. Never raises."""
        try:
            command = decode_frame(raw)
        except MalformedMessage as e:
            self.malformed_count += 1
            logger.warning("Dropping malformed message: %s", e.reason)
            return None

        handler = self._handlers.get(type(command), self._handle_unknown)
        try:
            await handler(command)
        except Exception:
            logger.exception("Error handling %s", type(command).__name__)
        return command

    async def drain(self) -> None:
        """Wait for background handlers (authentication, reboot) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_background(self) -> None:
        tasks = [t for t in self._background if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _handle_auth_required(self, command: AuthRequired) -> None:
        if self._auth_task is not None and not self._auth_task.done():
            logger.info("Ignoring AUTH_REQUIRED: authentication already in progress")
            return
        if not self.authenticator.should_attempt():
            logger.info("Ignoring AUTH_REQUIRED: authentication attempted recently")
            return
        self._auth_task = self._spawn(self.authenticate(), "authenticate")

    async def authenticate(self) -> bool:
        """Obtain a fresh token, store it and reconnect with it."""
        try:
            token = await self.authenticator.authenticate(self._device_info())
        except AuthenticationFailure as e:
            logger.error("Authentication failed: %s", e)
            return False

        try:
            self.credentials.store(token)
        except OSError as e:
            logger.error("Could not persist credential: %s", e)
            return False
        logger.info("Device authenticated")
        await self._reconnect("new credential")
        return True

    async def _handle_run_script(self, command: RunScript) -> None:
        await self.executor.start(command.script_id, command.content)

    async def _handle_stop_script(self, command: StopScript) -> None:
        if not await self.executor.stop(command.script_id):
            logger.debug("STOP_SCRIPT for %s: not running", command.script_id)

    async def _handle_reboot(self, command: DeviceReboot) -> None:
        logger.warning("Reboot requested by controller")
        self._spawn(self._reboot(), "reboot")

    async def _handle_heartbeat_ack(self, command: HeartbeatAck) -> None:
        pass

    async def _handle_config_update(self, command: ConfigUpdate) -> None:
        if command.heartbeat_interval_ms is not None:
            self.heartbeat.interval_ms = command.heartbeat_interval_ms
            logger.info("Heartbeat interval updated to %dms", command.heartbeat_interval_ms)
        if command.ignored_keys:
            logger.warning("Ignoring unsupported config keys: %s", ", ".join(command.ignored_keys))

    async def _handle_unknown(self, command: Any) -> None:
        if isinstance(command, UnknownMessage) and command.known:
            logger.warning("No handler for %s messages", command.msg_type)
        else:
            logger.warning("Unknown command: %s", getattr(command, "msg_type", command))
