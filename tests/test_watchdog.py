"""Tests for the stale worker watchdog."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from stitch.core.models import WorkerCallback
from stitch.core.status import NodeStatus
from stitch.core.watchdog import RunWatchdog


@pytest.fixture
def version_id(builder, save_version) -> str:
    return save_version(builder.worker("A").worker("B").edge("A", "B").build())


class TestSweep:
    def test_fresh_nodes_are_left_alone(self, orchestrator, version_id):
        watchdog = RunWatchdog(orchestrator, timeout_seconds=60)

        async def scenario():
            run = await orchestrator.start_run(version_id)
            timed_out = await watchdog.sweep()
            return run, timed_out, await orchestrator.get_run(run.id)

        _, timed_out, run = asyncio.run(scenario())
        assert timed_out == []
        assert run.node_states["A"].status == NodeStatus.RUNNING

    def test_stale_node_is_failed(self, orchestrator, version_id):
        watchdog = RunWatchdog(orchestrator, timeout_seconds=60)

        async def scenario():
            run = await orchestrator.start_run(version_id)
            later = datetime.now(UTC) + timedelta(seconds=120)
            timed_out = await watchdog.sweep(now=later)
            return run.id, timed_out, await orchestrator.get_run(run.id)

        run_id, timed_out, run = asyncio.run(scenario())
        assert timed_out == [(run_id, "A")]
        assert run.node_states["A"].status == NodeStatus.FAILED
        assert run.node_states["A"].error == "Worker timed out after 60s"
        assert run.node_states["B"].status == NodeStatus.PENDING

    def test_late_callback_after_timeout_is_ignored(self, orchestrator, version_id):
        watchdog = RunWatchdog(orchestrator, timeout_seconds=1)

        async def scenario():
            run = await orchestrator.start_run(version_id)
            await watchdog.sweep(now=datetime.now(UTC) + timedelta(seconds=5))
            return await orchestrator.handle_callback(
                run.id, "A", WorkerCallback(status="completed", output={"late": True})
            )

        run = asyncio.run(scenario())
        assert run.node_states["A"].status == NodeStatus.FAILED
        assert run.node_states["B"].status == NodeStatus.PENDING


class TestDaemon:
    def test_stop_ends_loop(self, orchestrator):
        watchdog = RunWatchdog(orchestrator, timeout_seconds=60, poll_interval=0.01)

        async def scenario():
            task = asyncio.create_task(watchdog.start_daemon())
            await asyncio.sleep(0.05)
            assert watchdog.running
            watchdog.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())
        assert watchdog.running is False
