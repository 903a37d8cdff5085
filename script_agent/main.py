#!/usr/bin/env python3
"""Script Agent - Main entry point.

A device-side runtime that keeps a connection to the controller alive and
runs the scripts it pushes, reporting logs, heartbeats and device stats.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .auth import AuthenticationCache, DeviceAuthenticator
from .config import Config
from .dispatcher import MessageDispatcher
from .engine import ScriptEngine, SubprocessScriptEngine
from .executor import ExecutionManager
from .heartbeat import HeartbeatConfig, HeartbeatScheduler
from .logs import LogAggregator, LogForwardingHandler
from .monitor import DeviceMonitor
from .protocol import script_result_frame
from .supervisor import ReconnectSupervisor, TransportFactory
from .telemetry import TelemetryCollector, get_device_info


logger = logging.getLogger(__name__)


class ScriptAgent:
    """Main agent orchestrator.

    All runtime state lives on the components built by ``_build()``. A
    ``DEVICE_REBOOT`` tears them down and builds a fresh set, which is how
    the agent restarts from scratch without leaving the process.
    """

    def __init__(
        self,
        config: Config,
        engine: Optional[ScriptEngine] = None,
        transport_factory: Optional[TransportFactory] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self.config = config
        self._engine = engine
        self._transport_factory = transport_factory
        self._telemetry = telemetry
        self._running = False
        self._wakeup = asyncio.Event()
        self._forwarder: Optional[logging.Handler] = None
        self.generation = 0
        self.ready = asyncio.Event()

    @property
    def device_id(self) -> str:
        return self.config.device.device_id

    def _build(self) -> None:
        """Create a fresh set of components and wire them together."""
        cfg = self.config
        device_id = self.device_id

        self.credentials = AuthenticationCache(Path(cfg.device.credential_path), device_id)
        self.credentials.load()
        self.authenticator = DeviceAuthenticator(
            cfg.controller.auth_url,
            timeout=cfg.controller.auth_timeout,
            cooldown=cfg.controller.auth_cooldown,
        )
        self.telemetry = self._telemetry or TelemetryCollector()
        self.heartbeat_config = HeartbeatConfig(interval_ms=cfg.telemetry.heartbeat_interval_ms)

        self.supervisor = ReconnectSupervisor(
            cfg.controller,
            cfg.reconnect,
            device_id,
            token_source=lambda: self.credentials.token,
            transport_factory=self._transport_factory,
        )
        self.logs = LogAggregator(device_id, self.supervisor, cfg.logs)
        self.executor = ExecutionManager(
            self._engine or SubprocessScriptEngine(cfg.executor.python, cfg.executor.stop_timeout),
            self.logs.add,
            on_result=self._send_result,
        )
        self.heartbeat = HeartbeatScheduler(
            device_id,
            self.supervisor,
            self.heartbeat_config,
            self.telemetry.heartbeat_snapshot,
        )
        self.dispatcher = MessageDispatcher(
            executor=self.executor,
            heartbeat=self.heartbeat_config,
            credentials=self.credentials,
            authenticator=self.authenticator,
            device_info=lambda: get_device_info(cfg.device),
            reconnect=self.supervisor.request_reconnect,
            reboot=self.reboot,
        )
        self.monitor = DeviceMonitor(
            device_id,
            self.supervisor,
            self.telemetry,
            cfg.telemetry,
            stop_non_critical=self.executor.stop_non_critical,
            critical_scripts=cfg.executor.critical_scripts,
            revive=self.supervisor.revive,
        )

        self.supervisor.on_open(self._on_open)
        self.supervisor.on_close(self._on_close)
        self.supervisor.on_frame(self.dispatcher.handle)

        if cfg.logging.forward_level:
            level = getattr(logging, cfg.logging.forward_level.upper(), logging.INFO)
            self._forwarder = LogForwardingHandler(self.logs, level)
            logging.getLogger(__package__).addHandler(self._forwarder)

    async def _on_open(self) -> None:
        self.heartbeat.start()
        self.logs.request_flush()

    async def _on_close(self, code: int, reason: str) -> None:
        await self.heartbeat.stop()

    def _send_result(self, result: Dict[str, Any]) -> None:
        self.supervisor.send(script_result_frame(self.device_id, result))

    async def _start_components(self) -> None:
        self.logs.start()
        self.monitor.start()
        await self.supervisor.start()

    async def _teardown(self) -> None:
        await self.monitor.stop()
        await self.heartbeat.stop()
        await self.executor.stop_all()
        await self.dispatcher.cancel_background()
        await self.logs.stop(flush=True)
        await self.supervisor.stop()
        await self.authenticator.close()
        if self._forwarder is not None:
            logging.getLogger(__package__).removeHandler(self._forwarder)
            self._forwarder = None

    async def reboot(self) -> None:
        """Restart agent state from scratch (not the physical device)."""
        logger.warning("Restarting agent")
        self._wakeup.set()

    async def run(self) -> None:
        """Run until ``stop()`` is called, rebuilding on every reboot."""
        self._log_banner()
        self._running = True
        while self._running:
            self._wakeup.clear()
            self.generation += 1
            self._build()
            await self._start_components()
            self.ready.set()
            try:
                await self._wakeup.wait()
            finally:
                self.ready.clear()
                await self._teardown()
        logger.info("Script Agent stopped")

    async def stop(self) -> None:
        """Stop the agent."""
        logger.info("Stopping Script Agent...")
        self._running = False
        self._wakeup.set()

    def _log_banner(self) -> None:
        logger.info("=" * 60)
        logger.info("Script Agent v%s", __version__)
        logger.info("=" * 60)
        logger.info("Device ID: %s", self.device_id)
        logger.info("Controller URL: %s", self.config.controller.url)
        logger.info("Auth URL: %s", self.config.controller.auth_url)
        logger.info("Heartbeat: %dms", self.config.telemetry.heartbeat_interval_ms)
        logger.info("")


def setup_logging(config: Config) -> None:
    """Configure logging."""
    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)
    log_format = config.logging.format

    handlers = [logging.StreamHandler()]
    if config.logging.file:
        handlers.append(logging.FileHandler(config.logging.file))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
    )

    # Reduce noise from libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Script Agent - device runtime for controller-pushed scripts"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file",
    )
    parser.add_argument(
        "--controller-url",
        help="Override controller WebSocket URL",
    )
    parser.add_argument(
        "--device-id",
        help="Override device ID",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser.parse_args(argv)


async def main_async() -> int:
    """Async main entry point."""
    args = parse_args()

    # Load config
    config = Config.load(args.config)

    # Apply CLI overrides
    if args.controller_url:
        config.controller.url = args.controller_url
    if args.device_id:
        config.device.device_id = args.device_id
    if args.log_level:
        config.logging.level = args.log_level

    # Setup logging
    setup_logging(config)

    # Create and run agent
    agent = ScriptAgent(config)

    # Handle signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        asyncio.create_task(agent.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await agent.run()
        return 0
    except Exception:
        logger.exception("Fatal error")
        return 1


def main() -> None:
    """Main entry point."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
