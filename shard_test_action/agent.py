"""Worker loop that leases batches, runs them and reports back."""

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from shard_test_action.errors import StaleAckError
from shard_test_action.executor import TestExecutor
from shard_test_action.models.batch import AgentStatus, Lease
from shard_test_action.models.result import RunResult

log = logging.getLogger(__name__)


class QueueClient(Protocol):
    """Operations an agent needs from the work queue, local or remote."""

    async def heartbeat(self, agent_id: str) -> AgentStatus:
        """Report liveness."""
        ...

    async def lease(self, agent_id: str) -> Lease | None:
        """Lease the next batch, None when there is nothing left to run."""
        ...

    async def ack(
        self, batch_id: str, agent_id: str, results: Sequence[RunResult]
    ) -> None:
        """Report a completed batch."""
        ...

    async def extend_lease(self, batch_id: str, agent_id: str) -> bool:
        """Renew a held lease."""
        ...


@dataclass(kw_only=True)
class AgentClient:
    """Runs the lease, execute, ack loop for one agent until the queue is empty.

    Test failures are ordinary results. Only an executor crash leaves a batch
    un-acked, and the exception propagates so the worker process can die;
    the lapsed lease is then recovered by the failure handler.

    A background task heartbeats every ``heartbeat_interval`` seconds for
    the agent's whole lifetime and renews the lease of the batch being run.
    """

    agent_id: str
    queue: QueueClient
    executor: TestExecutor
    heartbeat_interval: float = 30

    current: Lease | None = field(default=None, init=False)

    async def run(self) -> int:
        """Process batches until the queue stops handing out leases.

        Returns:
            Number of batches this agent acked successfully

        """
        if await self.queue.heartbeat(self.agent_id) is AgentStatus.DEAD:
            log.warning("Agent %s is marked dead, not leasing", self.agent_id)
            return 0

        keep_alive = asyncio.create_task(self._keep_alive())
        try:
            acked = await self._work()
        finally:
            keep_alive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keep_alive

        log.info("Agent %s done after %d batch(es)", self.agent_id, acked)
        return acked

    async def _work(self) -> int:
        acked = 0
        while (lease := await self.queue.lease(self.agent_id)) is not None:
            log.info(
                "Agent %s running %s (%d test(s), attempt %d)",
                self.agent_id,
                lease.batch_id,
                len(lease.tests),
                lease.attempt,
            )
            self.current = lease
            try:
                results = await self.executor.execute(lease, self.agent_id)
            finally:
                self.current = None

            try:
                await self.queue.ack(lease.batch_id, self.agent_id, results)
            except StaleAckError as e:
                log.warning("%s", e)
                continue
            acked += 1
        return acked

    async def _keep_alive(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._beat()
            except Exception as e:
                log.warning(
                    "Agent %s keep-alive failed, retrying in %.1fs: %s",
                    self.agent_id,
                    self.heartbeat_interval,
                    e,
                )

    async def _beat(self) -> None:
        await self.queue.heartbeat(self.agent_id)
        lease = self.current
        if lease is not None and not await self.queue.extend_lease(
            lease.batch_id, self.agent_id
        ):
            log.warning(
                "Agent %s lost lease on %s, its ack will be stale",
                self.agent_id,
                lease.batch_id,
            )
            self.current = None


async def run_local_agents(
    agent_ids: Sequence[str],
    queue: QueueClient,
    executor: TestExecutor,
    heartbeat_interval: float = 30,
) -> Sequence[int | BaseException]:
    """Run several agents concurrently in this process.

    Returns:
        Batches acked per agent, or the exception that stopped it

    """
    log.info("Starting %d local agent(s)", len(agent_ids))
    outcomes = await asyncio.gather(
        *(
            AgentClient(
                agent_id=agent_id,
                queue=queue,
                executor=executor,
                heartbeat_interval=heartbeat_interval,
            ).run()
            for agent_id in agent_ids
        ),
        return_exceptions=True,
    )
    for agent_id, outcome in zip(agent_ids, outcomes, strict=True):
        if isinstance(outcome, Exception):
            log.error("Agent %s crashed: %s", agent_id, outcome, exc_info=outcome)
    return outcomes
