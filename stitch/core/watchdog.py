"""Background sweeper for workers that never call back.

A Worker node sits in ``running`` until its callback arrives. The watchdog
fails nodes that have been running longer than the configured timeout, through
the same callback path a real failure would take.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from stitch.core.engine import RunOrchestrator
from stitch.core.models import WorkerCallback
from stitch.core.status import NodeStatus

logger = logging.getLogger(__name__)


class RunWatchdog:
    """
    Periodically times out stale running nodes.

    Design:
    - Polls the database for runs with running nodes
    - Fails each stale node via ``handle_callback`` so joins still advance
    - Safe to run alongside other orchestrators; late real callbacks are ignored
    """

    def __init__(
        self,
        orchestrator: RunOrchestrator,
        timeout_seconds: float,
        poll_interval: float = 5.0,
    ):
        self.orchestrator = orchestrator
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.running = False

    async def sweep(self, now: datetime | None = None) -> list[tuple[str, str]]:
        """Fail every node running longer than the timeout. Returns (run_id, key) pairs."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.timeout_seconds)
        runs = await asyncio.to_thread(self.orchestrator.db.list_runs)

        timed_out = []
        for run in runs:
            for key in run.effective_keys():
                state = run.node_states[key]
                if state.status != NodeStatus.RUNNING or state.started_at is None:
                    continue
                if state.started_at > cutoff:
                    continue

                logger.warning(f"Run {run.id}: {key} running since {state.started_at}, timing out")
                await self.orchestrator.handle_callback(
                    run.id,
                    key,
                    WorkerCallback(
                        status="failed",
                        error=f"Worker timed out after {self.timeout_seconds:g}s",
                    ),
                )
                timed_out.append((run.id, key))
        return timed_out

    async def start_daemon(self) -> None:
        self.running = True
        while self.running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Watchdog error: {e}")
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        """Stop the watchdog daemon"""
        self.running = False
