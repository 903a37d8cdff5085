"""
Execution manager tests

Uses the deterministic FakeEngine; the subprocess engine has its own tests.
"""

import asyncio

import pytest

from script_agent.executor import ExecutionManager, ScriptState

from conftest import FakeEngine, wait_until


class LogSink:
    def __init__(self):
        self.records = []

    def __call__(self, script_id, line):
        self.records.append((script_id, line))

    def lines(self, script_id):
        return [line for sid, line in self.records if sid == script_id]


def make_manager():
    engine = FakeEngine()
    logs = LogSink()
    results = []
    manager = ExecutionManager(engine, logs, on_result=results.append)
    return manager, engine, logs, results


class TestExecutionManager:
    """Script lifecycle"""

    @pytest.mark.asyncio
    async def test_start_registers_running_instance(self):
        manager, engine, logs, _ = make_manager()

        snap = await manager.start("s1", "send_log('hi')")

        assert snap.script_id == "s1"
        assert snap.state == ScriptState.RUNNING
        assert [a.script_id for a in manager.list_active()] == ["s1"]
        assert logs.lines("s1") == ["Script s1 started"]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_hot_reload_keeps_one_instance(self):
        manager, engine, logs, _ = make_manager()

        await manager.start("s1", "v1")
        await manager.start("s1", "v2")

        active = manager.list_active()
        assert len(active) == 1
        assert active[0].state == ScriptState.RUNNING
        assert engine.handles[0].forced
        assert engine.latest("s1").content == "v2"
        assert logs.lines("s1") == [
            "Script s1 started",
            "Script s1 terminated",
            "Script s1 started",
        ]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_stop_unknown_id_is_silent(self):
        manager, engine, logs, results = make_manager()

        assert await manager.stop("nope") is False
        assert logs.records == []
        assert results == []
        assert engine.stopped == []

    @pytest.mark.asyncio
    async def test_stop_evicts_and_logs(self):
        manager, engine, logs, results = make_manager()
        await manager.start("s1", "x")

        assert await manager.stop("s1") is True

        assert manager.list_active() == []
        assert engine.stopped == ["s1"]
        assert logs.lines("s1")[-1] == "Script s1 terminated"
        assert results[-1]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_natural_completion_reaps_instance(self):
        manager, engine, logs, results = make_manager()
        await manager.start("s1", "x")

        engine.latest("s1").complete()
        await wait_until(lambda: not manager.list_active())

        assert logs.lines("s1") == ["Script s1 started", "Script s1 finished"]
        assert results[-1]["scriptId"] == "s1"
        assert results[-1]["status"] == "stopped"
        assert results[-1]["error"] is None

    @pytest.mark.asyncio
    async def test_fault_is_isolated(self):
        manager, engine, logs, results = make_manager()
        await manager.start("bad", "x")
        await manager.start("good", "y")

        engine.latest("bad").fault("ZeroDivisionError: division by zero")
        await wait_until(lambda: not manager.is_running("bad"))

        assert "SCRIPT_ERROR: ZeroDivisionError: division by zero" in logs.lines("bad")
        assert results[-1]["status"] == "failed"
        assert manager.is_running("good")
        assert logs.lines("good") == ["Script good started"]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_script_log_callback_is_tagged(self):
        manager, engine, logs, _ = make_manager()
        await manager.start("s1", "x")

        engine.latest("s1").log("progress 50%")

        assert ("s1", "progress 50%") in logs.records
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_completion_after_reload_does_not_evict_new_instance(self):
        manager, engine, logs, _ = make_manager()
        await manager.start("s1", "v1")
        old = engine.latest("s1")
        await manager.start("s1", "v2")

        # Let the old watcher observe its forced exit
        assert old.forced
        await asyncio.sleep(0.01)

        assert manager.is_running("s1")
        assert logs.lines("s1").count("Script s1 finished") == 0
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_engine_failure_marks_failed(self):
        manager, engine, logs, results = make_manager()
        engine.fail_next_run = OSError("no interpreter")

        snap = await manager.start("s1", "x")

        assert snap.state == ScriptState.FAILED
        assert manager.list_active() == []
        assert logs.lines("s1") == ["SCRIPT_ERROR: failed to start: no interpreter"]
        assert results[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_stop_non_critical(self):
        manager, engine, logs, _ = make_manager()
        for sid in ("keep", "a", "b"):
            await manager.start(sid, "x")

        stopped = await manager.stop_non_critical(["keep"])

        assert sorted(stopped) == ["a", "b"]
        assert [a.script_id for a in manager.list_active()] == ["keep"]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_list_active_is_a_snapshot(self):
        manager, engine, logs, _ = make_manager()
        await manager.start("s1", "x")

        snapshot = manager.list_active()
        await manager.stop("s1")

        assert snapshot[0].state == ScriptState.RUNNING
        assert snapshot[0].script_id == "s1"
        assert manager.list_active() == []
