"""
Heartbeat and periodic task tests
"""

import asyncio
import json

import pytest

from script_agent.heartbeat import HeartbeatConfig, HeartbeatScheduler
from script_agent.scheduler import PeriodicTask
from script_agent.telemetry import HeartbeatSnapshot

from conftest import FakeLink, GatedSleep, wait_until


def snapshot():
    return HeartbeatSnapshot(battery=77.0, memory=31.5)


class TestPeriodicTask:
    """Supervised periodic loop"""

    @pytest.mark.asyncio
    async def test_stop_prevents_further_runs(self):
        runs = []

        async def action():
            runs.append(1)

        sleep = GatedSleep()
        task = PeriodicTask("t", action, 1.0, run_immediately=True, sleep=sleep)
        task.start()
        await wait_until(lambda: sleep.waiting == 1)
        await task.stop()

        assert runs == [1]
        assert not task.running
        await asyncio.sleep(0.01)
        assert runs == [1]

    @pytest.mark.asyncio
    async def test_trigger_cuts_wait_short(self):
        runs = []

        async def action():
            runs.append(1)

        sleep = GatedSleep()
        task = PeriodicTask("t", action, 10.0, sleep=sleep)
        task.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            assert runs == []
            task.trigger()
            await wait_until(lambda: runs == [1])
        finally:
            await task.stop()

    @pytest.mark.asyncio
    async def test_action_errors_do_not_kill_loop(self):
        calls = []

        async def action():
            calls.append(1)
            raise RuntimeError("boom")

        sleep = GatedSleep()
        task = PeriodicTask("t", action, 1.0, run_immediately=True, sleep=sleep)
        task.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            sleep.release()
            await wait_until(lambda: len(calls) == 2)
            assert task.running
        finally:
            await task.stop()


class TestHeartbeatScheduler:
    """Heartbeat loop"""

    @pytest.mark.asyncio
    async def test_sends_heartbeat_then_waits(self):
        link = FakeLink()
        sleep = GatedSleep()
        scheduler = HeartbeatScheduler("dev-1", link, HeartbeatConfig(30000), snapshot, sleep=sleep)

        scheduler.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            assert len(link.sent) == 1
            frame = json.loads(link.sent[0])
            assert frame["type"] == "HEARTBEAT"
            assert frame["deviceId"] == "dev-1"
            assert frame["battery"] == 77.0
            assert frame["memory"] == 31.5
            assert sleep.delays == [30.0]
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_interval_change_applies_to_next_cycle(self):
        link = FakeLink()
        sleep = GatedSleep()
        config = HeartbeatConfig(30000)
        scheduler = HeartbeatScheduler("dev-1", link, config, snapshot, sleep=sleep)

        scheduler.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            config.interval_ms = 60000
            assert sleep.delays == [30.0]

            sleep.release()
            await wait_until(lambda: len(sleep.delays) == 2)
            assert sleep.delays == [30.0, 60.0]
            assert len(link.sent) == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_no_heartbeat_on_closed_link(self):
        link = FakeLink(is_open=False)
        sleep = GatedSleep()
        scheduler = HeartbeatScheduler("dev-1", link, HeartbeatConfig(1000), snapshot, sleep=sleep)

        scheduler.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            assert link.sent == []
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_single_loop_per_open_period(self):
        link = FakeLink()
        sleep = GatedSleep()
        scheduler = HeartbeatScheduler("dev-1", link, HeartbeatConfig(1000), snapshot, sleep=sleep)

        scheduler.start()
        scheduler.start()
        try:
            await wait_until(lambda: sleep.waiting == 1)
            await asyncio.sleep(0.01)
            assert len(link.sent) == 1
            assert sleep.waiting == 1
        finally:
            await scheduler.stop()
        assert not scheduler.running
