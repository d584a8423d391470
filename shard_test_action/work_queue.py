"""Lease-based store of pending, leased and completed batches."""

import asyncio
import heapq
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from shard_test_action.aggregator import Aggregator
from shard_test_action.errors import QueueClosedError, StaleAckError, UnknownBatchError
from shard_test_action.models.batch import Agent, AgentStatus, Batch, BatchState, Lease
from shard_test_action.models.result import RunResult

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class WorkQueue:
    """Concurrency-safe owner of every batch in a run.

    All mutations (lease, ack, requeue, extend_lease, heartbeat) run under a
    single lock, so each batch's lease/ack/requeue transitions are
    linearizable. Batches are offered in partition sequence order; a
    requeued batch goes back to its original position.

    ``attempt_count`` counts lease grants. A batch whose lease lapses after
    ``max_attempts`` grants becomes permanently failed.
    """

    aggregator: Aggregator
    lease_ttl: float = 300
    max_attempts: int = 3
    heartbeat_timeout: float = 60
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _batches: dict[str, Batch] = field(default_factory=dict, init=False)
    _pending: list[tuple[int, str]] = field(default_factory=list, init=False)
    _agents: dict[str, Agent] = field(default_factory=dict, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _changed: asyncio.Event = field(
        default_factory=asyncio.Event, init=False, repr=False
    )
    _closed: bool = field(default=False, init=False)
    _leased_once: bool = field(default=False, init=False)

    @property
    def batches(self) -> Sequence[Batch]:
        """All batches in sequence order."""
        return sorted(self._batches.values(), key=lambda batch: batch.sequence)

    @property
    def agents(self) -> Mapping[str, Agent]:
        """Agents that have contacted the queue, by id."""
        return self._agents

    @property
    def closed(self) -> bool:
        """Whether lease issuance has stopped."""
        return self._closed

    def load(self, batches: Iterable[Batch]) -> None:
        """Seed the queue with the partitioner's batch sequence.

        Raises:
            QueueClosedError: If the queue is closed or already leasing
            ValueError: If two batches share an id

        """
        if self._closed or self._leased_once:
            raise QueueClosedError("Cannot load batches into a started queue")

        for batch in batches:
            if batch.batch_id in self._batches:
                raise ValueError(f"Duplicate batch id: {batch.batch_id}")
            self._batches[batch.batch_id] = batch
            if batch.state is BatchState.PENDING:
                heapq.heappush(self._pending, (batch.sequence, batch.batch_id))

    async def heartbeat(self, agent_id: str) -> AgentStatus:
        """Record a sign of life, registering unknown agents.

        Dead agents stay dead; their status is returned so they can stop.
        """
        async with self._lock:
            return self._touch(agent_id).status

    async def lease(self, agent_id: str) -> Lease | None:
        """Lease the next pending batch to an agent.

        While nothing is pending but other agents still hold leases, waits
        until one of those batches is acked or requeued.

        Returns:
            The lease, or None once every batch is terminal, the queue is
            closed, or the agent is dead

        """
        while True:
            async with self._lock:
                agent = self._touch(agent_id)
                if self._closed or agent.status is AgentStatus.DEAD:
                    return None
                if self._pending:
                    return self._grant(agent_id)
                if self.is_drained():
                    return None
                changed = self._changed
            await changed.wait()

    def _grant(self, agent_id: str) -> Lease:
        _, batch_id = heapq.heappop(self._pending)
        batch = self._batches[batch_id]
        batch.state = BatchState.LEASED
        batch.lease_owner = agent_id
        batch.lease_expires_at = self.clock() + self.lease_ttl
        batch.attempt_count += 1
        self._leased_once = True

        log.info(
            "Leased %s to %s (attempt %d, %d test(s), ~%dms)",
            batch_id,
            agent_id,
            batch.attempt_count,
            len(batch.tests),
            batch.total_estimated_duration_ms,
        )
        return Lease(
            batch_id=batch_id,
            tests=batch.tests,
            attempt=batch.attempt_count,
            lease_ttl=self.lease_ttl,
        )

    async def ack(
        self, batch_id: str, agent_id: str, results: Sequence[RunResult]
    ) -> None:
        """Complete a batch and forward its results to the aggregator.

        Raises:
            StaleAckError: If the agent does not hold the lease on the batch
            UnknownBatchError: If the batch id is unknown

        """
        async with self._lock:
            batch = self._get(batch_id)
            if batch.state is not BatchState.LEASED or batch.lease_owner != agent_id:
                raise StaleAckError(
                    batch_id,
                    agent_id,
                    f"batch is {batch.state} (owner={batch.lease_owner})",
                )

            batch.state = BatchState.COMPLETED
            batch.lease_owner = None
            batch.lease_expires_at = None

            expected = set(batch.test_ids)
            accepted = [result for result in results if result.test_id in expected]
            if len(accepted) != len(results):
                log.warning(
                    "Dropped %d result(s) for tests outside %s",
                    len(results) - len(accepted),
                    batch_id,
                )
            self.aggregator.record(accepted)

            if agent := self._agents.get(agent_id):
                agent.batches_completed += 1
            log.info("Completed %s by %s", batch_id, agent_id)
            self._notify()

    async def requeue(
        self, batch_id: str, *, only_if_expired: bool = False
    ) -> BatchState:
        """Return a leased batch to pending, or fail it once attempts run out.

        Args:
            batch_id: Batch to requeue
            only_if_expired: Skip batches whose lease was renewed in the
                meantime

        Returns:
            The state of the batch after the call; non-leased batches are
            left untouched

        """
        async with self._lock:
            batch = self._get(batch_id)
            if batch.state is not BatchState.LEASED:
                return batch.state
            if only_if_expired and not self._is_expired(batch):
                return batch.state

            owner = batch.lease_owner
            batch.lease_owner = None
            batch.lease_expires_at = None

            if batch.attempt_count < self.max_attempts:
                batch.state = BatchState.PENDING
                heapq.heappush(self._pending, (batch.sequence, batch_id))
                log.warning(
                    "Requeued %s after lease held by %s lapsed (attempt %d/%d)",
                    batch_id,
                    owner,
                    batch.attempt_count,
                    self.max_attempts,
                )
            else:
                batch.state = BatchState.PERMANENTLY_FAILED
                log.error(
                    "Batch %s permanently failed after %d attempt(s)",
                    batch_id,
                    batch.attempt_count,
                )
            self._notify()
            return batch.state

    async def extend_lease(self, batch_id: str, agent_id: str) -> bool:
        """Renew the lease on a long-running batch for its current owner."""
        async with self._lock:
            batch = self._get(batch_id)
            if batch.state is not BatchState.LEASED or batch.lease_owner != agent_id:
                return False
            batch.lease_expires_at = self.clock() + self.lease_ttl
            self._touch(agent_id)
            return True

    def mark_dead(self, agent_id: str) -> None:
        """Exclude an agent from future lease issuance."""
        if (agent := self._agents.get(agent_id)) and agent.status is AgentStatus.ALIVE:
            agent.status = AgentStatus.DEAD
            log.warning("Agent %s marked dead (no heartbeat)", agent_id)
            self._notify()

    def close(self) -> None:
        """Stop issuing leases; in-flight batches may still ack or lapse."""
        if not self._closed:
            self._closed = True
            log.info("Queue closed, no further leases will be issued")
            self._notify()

    def expired_leases(self) -> Sequence[str]:
        """Leased batches whose lease deadline has passed."""
        return [
            batch.batch_id
            for batch in self.batches
            if batch.state is BatchState.LEASED and self._is_expired(batch)
        ]

    def stale_agents(self) -> Sequence[str]:
        """Live agents that missed their heartbeat deadline."""
        now = self.clock()
        return [
            agent.agent_id
            for agent in self._agents.values()
            if agent.status is AgentStatus.ALIVE
            and now - agent.last_heartbeat_at > self.heartbeat_timeout
        ]

    def permanently_failed(self) -> Sequence[str]:
        """Ids of batches that exhausted their attempts."""
        return [
            batch.batch_id
            for batch in self.batches
            if batch.state is BatchState.PERMANENTLY_FAILED
        ]

    def has_leases(self) -> bool:
        """Whether any batch is currently leased."""
        return any(
            batch.state is BatchState.LEASED for batch in self._batches.values()
        )

    def is_drained(self) -> bool:
        """Whether every batch reached a terminal state."""
        return all(batch.is_terminal for batch in self._batches.values())

    def snapshot(self) -> Mapping[BatchState, int]:
        """Number of batches in each state."""
        counts = dict.fromkeys(BatchState, 0)
        for batch in self._batches.values():
            counts[batch.state] += 1
        return counts

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    def _get(self, batch_id: str) -> Batch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise UnknownBatchError(f"Unknown batch: {batch_id}") from None

    def _is_expired(self, batch: Batch) -> bool:
        expires_at = batch.lease_expires_at
        return expires_at is not None and expires_at <= self.clock()

    def _touch(self, agent_id: str) -> Agent:
        now = self.clock()
        agent = self._agents.get(agent_id)
        if agent is None:
            agent = Agent(agent_id=agent_id, last_heartbeat_at=now)
            self._agents[agent_id] = agent
            log.info("Registered agent %s", agent_id)
        elif agent.status is AgentStatus.ALIVE:
            agent.last_heartbeat_at = now
        return agent
