"""Periodic detection of lapsed leases and silent agents."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from shard_test_action.models.batch import BatchState
from shard_test_action.work_queue import WorkQueue

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class TickReport:
    """What a single failure-handler pass changed."""

    requeued: Sequence[str] = field(default=())
    permanently_failed: Sequence[str] = field(default=())
    dead_agents: Sequence[str] = field(default=())


@dataclass(frozen=True, kw_only=True)
class FailureHandler:
    """Requeues lapsed leases and marks silent agents dead.

    The two signals are independent: a dead agent's batches come back only
    through lease expiry, never because the agent died.
    """

    queue: WorkQueue
    interval: float = 5

    async def tick(self) -> TickReport:
        """Run one detection pass."""
        requeued: list[str] = []
        failed: list[str] = []

        for batch_id in self.queue.expired_leases():
            state = await self.queue.requeue(batch_id, only_if_expired=True)
            if state is BatchState.PENDING:
                requeued.append(batch_id)
            elif state is BatchState.PERMANENTLY_FAILED:
                failed.append(batch_id)

        dead = list(self.queue.stale_agents())
        for agent_id in dead:
            self.queue.mark_dead(agent_id)

        return TickReport(
            requeued=requeued, permanently_failed=failed, dead_agents=dead
        )

    async def run(self) -> None:
        """Tick every ``interval`` seconds until cancelled."""
        log.info("Failure handler started (interval=%.1fs)", self.interval)
        while True:
            report = await self.tick()
            if report.requeued or report.permanently_failed or report.dead_agents:
                log.info(
                    "Failure handler pass: requeued=%s failed=%s dead=%s",
                    list(report.requeued),
                    list(report.permanently_failed),
                    list(report.dead_agents),
                )
            await asyncio.sleep(self.interval)
