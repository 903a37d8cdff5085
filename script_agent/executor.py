"""Script execution manager for Script Agent."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .engine import ScriptEngine, ScriptExit, ScriptHandle
from .errors import ScriptFault


logger = logging.getLogger(__name__)

ScriptLog = Callable[[str, str], None]
ResultCallback = Callable[[Dict[str, Any]], None]


class ScriptState(str, Enum):
    """Script instance state."""
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ScriptInstance:
    """One execution of a script. Only the manager ever touches these."""
    script_id: str
    state: ScriptState
    started_at: float
    finished_at: Optional[float] = None
    error: Optional[str] = None
    handle: Optional[ScriptHandle] = None
    watcher: Optional[asyncio.Task] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scriptId": self.script_id,
            "status": self.state.value,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class ActiveScript:
    """Snapshot of a live instance, safe to hand to other components."""
    script_id: str
    state: ScriptState
    started_at: float


class ExecutionManager:
    """Starts, tracks, force-stops and reaps script instances.

    At most one live instance exists per script id. Starting an id that is
    already live stops the old instance first (hot reload). Faults inside a
    script are reported through the log callback and never propagate.
    """

    def __init__(
        self,
        engine: ScriptEngine,
        log: ScriptLog,
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        self._engine = engine
        self._log = log
        self._on_result = on_result
        self._instances: Dict[str, ScriptInstance] = {}
        self._lock = asyncio.Lock()

    async def start(self, script_id: str, content: str) -> ActiveScript:
        """Run ``content`` under ``script_id``, replacing any live instance."""
        async with self._lock:
            if script_id in self._instances:
                logger.info("Script %s already running, reloading", script_id)
                await self._stop_locked(script_id)

            instance = ScriptInstance(
                script_id=script_id,
                state=ScriptState.PENDING,
                started_at=time.time(),
            )
            self._instances[script_id] = instance

            try:
                instance.handle = await self._engine.run(
                    script_id, content, lambda line: self._emit(script_id, line)
                )
            except Exception as e:
                # The engine itself failed; nothing is running
                self._instances.pop(script_id, None)
                self._finish(instance, ScriptState.FAILED, f"failed to start: {e}")
                logger.exception("Could not start script %s", script_id)
                self._emit(script_id, f"SCRIPT_ERROR: failed to start: {e}")
                return self._snapshot(instance)

            instance.state = ScriptState.RUNNING
            instance.watcher = asyncio.create_task(
                self._watch(instance), name=f"script-{script_id}"
            )
            logger.info("Script %s started", script_id)
            self._emit(script_id, f"Script {script_id} started")
            return self._snapshot(instance)

    async def stop(self, script_id: str) -> bool:
        """Force-stop ``script_id``. Unknown ids are a silent no-op."""
        async with self._lock:
            return await self._stop_locked(script_id)

    async def stop_all(self) -> List[str]:
        """Force-stop every live instance."""
        return await self.stop_many(list(self._instances))

    async def stop_non_critical(self, critical: Iterable[str]) -> List[str]:
        """Force-stop every live instance whose id is not in ``critical``."""
        keep = set(critical)
        return await self.stop_many([sid for sid in self._instances if sid not in keep])

    async def stop_many(self, script_ids: Iterable[str]) -> List[str]:
        stopped = []
        async with self._lock:
            for script_id in script_ids:
                if await self._stop_locked(script_id):
                    stopped.append(script_id)
        return stopped

    def list_active(self) -> List[ActiveScript]:
        """Snapshot of live instances."""
        return [self._snapshot(i) for i in self._instances.values()]

    def is_running(self, script_id: str) -> bool:
        instance = self._instances.get(script_id)
        return instance is not None and instance.state == ScriptState.RUNNING

    async def _stop_locked(self, script_id: str) -> bool:
        instance = self._instances.pop(script_id, None)
        if instance is None:
            return False

        instance.state = ScriptState.STOPPING
        if instance.handle is not None:
            try:
                await self._engine.force_stop(instance.handle)
            except Exception:
                logger.exception("Force-stop of script %s failed", script_id)

        self._finish(instance, ScriptState.STOPPED)
        logger.info("Script %s terminated", script_id)
        self._emit(script_id, f"Script {script_id} terminated")
        return True

    async def _watch(self, instance: ScriptInstance) -> None:
        """Reap the instance when its execution context ends on its own."""
        assert instance.handle is not None
        try:
            outcome = await instance.handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome = ScriptExit(ok=False, error=f"lost track of script: {e}")

        if instance.state != ScriptState.RUNNING:
            # Stopped by the manager; that path already did the bookkeeping
            return
        if self._instances.get(instance.script_id) is instance:
            del self._instances[instance.script_id]

        sid = instance.script_id
        if outcome.ok:
            self._finish(instance, ScriptState.STOPPED)
            logger.info("Script %s finished", sid)
            self._emit(sid, f"Script {sid} finished")
        else:
            fault = ScriptFault(sid, outcome.error or "terminated unexpectedly")
            self._finish(instance, ScriptState.FAILED, fault.message)
            logger.warning("Script %s failed: %s", sid, fault.message)
            self._emit(sid, f"SCRIPT_ERROR: {fault.message}")
            self._emit(sid, f"Script {sid} finished")

    def _finish(self, instance: ScriptInstance, state: ScriptState, error: Optional[str] = None) -> None:
        instance.state = state
        instance.error = error
        instance.finished_at = time.time()
        if self._on_result is not None:
            try:
                self._on_result(instance.to_dict())
            except Exception:
                logger.exception("Result callback failed for script %s", instance.script_id)

    def _emit(self, script_id: str, line: str) -> None:
        try:
            self._log(script_id, line)
        except Exception:
            logger.exception("Log callback failed for script %s", script_id)

    @staticmethod
    def _snapshot(instance: ScriptInstance) -> ActiveScript:
        return ActiveScript(
            script_id=instance.script_id,
            state=instance.state,
            started_at=instance.started_at,
        )
