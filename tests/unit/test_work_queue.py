"""Tests for the lease-based work queue."""

import asyncio

import pytest

from shard_test_action.aggregator import Aggregator
from shard_test_action.errors import QueueClosedError, StaleAckError, UnknownBatchError
from shard_test_action.models.batch import AgentStatus, Batch, BatchState
from shard_test_action.partitioner import partition
from shard_test_action.testing.clock import FakeClock
from shard_test_action.testing.factories import make_tests, passing_results
from shard_test_action.work_queue import WorkQueue


def _batches(count: int) -> list[Batch]:
    return [
        Batch(
            batch_id=f"b{index}",
            sequence=index,
            tests=make_tests([100], prefix=f"b{index}"),
        )
        for index in range(count)
    ]


@pytest.fixture
def loaded(queue: WorkQueue) -> WorkQueue:
    """Queue seeded with three single-test batches."""
    queue.load(_batches(3))
    return queue


class TestLoad:
    """Tests for WorkQueue.load."""

    def test_rejects_duplicate_batch_ids(self, queue: WorkQueue) -> None:
        """Batch ids must be unique."""
        batch = _batches(1)[0]

        with pytest.raises(ValueError, match="Duplicate batch id"):
            queue.load([batch, batch])

    async def test_rejects_load_after_leasing(self, loaded: WorkQueue) -> None:
        """The batch sequence is fixed once leasing starts."""
        await loaded.lease("a1")

        with pytest.raises(QueueClosedError):
            loaded.load(_batches(1))

    def test_empty_queue_is_drained(self, queue: WorkQueue) -> None:
        """A queue without batches has nothing left to do."""
        queue.load([])

        assert queue.is_drained()


class TestLease:
    """Tests for WorkQueue.lease."""

    async def test_leases_in_sequence_order(self, loaded: WorkQueue) -> None:
        """Batches are offered in partition order."""
        first = await loaded.lease("a1")
        second = await loaded.lease("a2")

        assert first is not None and first.batch_id == "b0"
        assert second is not None and second.batch_id == "b1"

    async def test_marks_batch_leased(
        self, loaded: WorkQueue, clock: FakeClock
    ) -> None:
        """Leasing sets owner, expiry and attempt count."""
        lease = await loaded.lease("a1")

        batch = loaded.batches[0]
        assert lease is not None
        assert lease.attempt == 1
        assert lease.lease_ttl == 30
        assert batch.state is BatchState.LEASED
        assert batch.lease_owner == "a1"
        assert batch.lease_expires_at == clock.now + 30
        assert batch.attempt_count == 1

    async def test_returns_none_when_drained(self, loaded: WorkQueue) -> None:
        """Once every batch completed the agent is told to stop."""
        for _ in range(3):
            lease = await loaded.lease("a1")
            assert lease is not None
            await loaded.ack(lease.batch_id, "a1", passing_results(lease.tests, "a1"))

        assert await loaded.lease("a1") is None

    async def test_empty_queue_returns_none(self, queue: WorkQueue) -> None:
        """Empty run hands out no leases."""
        queue.load([])

        assert await queue.lease("a1") is None

    async def test_waits_while_other_leases_are_outstanding(
        self, queue: WorkQueue
    ) -> None:
        """An agent waits for a leased batch to come back rather than stop."""
        queue.load(_batches(1))
        await queue.lease("a1")

        waiter = asyncio.create_task(queue.lease("a2"))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await queue.requeue("b0")
        lease = await asyncio.wait_for(waiter, timeout=1)

        assert lease is not None
        assert lease.batch_id == "b0"
        assert lease.attempt == 2

    async def test_waiting_agent_stops_when_last_batch_completes(
        self, queue: WorkQueue
    ) -> None:
        """Waiters are released once the outstanding batch is acked."""
        queue.load(_batches(1))
        lease = await queue.lease("a1")
        assert lease is not None

        waiter = asyncio.create_task(queue.lease("a2"))
        await asyncio.sleep(0.01)
        await queue.ack("b0", "a1", passing_results(lease.tests, "a1"))

        assert await asyncio.wait_for(waiter, timeout=1) is None

    async def test_closed_queue_issues_no_leases(self, loaded: WorkQueue) -> None:
        """After close, pending batches are never leased."""
        loaded.close()

        assert await loaded.lease("a1") is None
        assert loaded.snapshot()[BatchState.PENDING] == 3

    async def test_close_releases_waiting_agents(self, queue: WorkQueue) -> None:
        """Agents waiting for work stop when the run is aborted."""
        queue.load(_batches(1))
        await queue.lease("a1")
        waiter = asyncio.create_task(queue.lease("a2"))
        await asyncio.sleep(0.01)

        queue.close()

        assert await asyncio.wait_for(waiter, timeout=1) is None

    async def test_dead_agent_gets_no_lease(self, loaded: WorkQueue) -> None:
        """Dead agents are excluded from lease issuance."""
        await loaded.heartbeat("a1")
        loaded.mark_dead("a1")

        assert await loaded.lease("a1") is None
        assert await loaded.heartbeat("a1") is AgentStatus.DEAD

    async def test_concurrent_leases_are_unique(self, queue: WorkQueue) -> None:
        """Concurrent callers never receive the same batch."""
        queue.load(_batches(20))

        leases = await asyncio.gather(
            *(queue.lease(f"a{index % 10}") for index in range(20))
        )

        batch_ids = [lease.batch_id for lease in leases if lease is not None]
        assert sorted(batch_ids) == sorted(f"b{index}" for index in range(20))


class TestAck:
    """Tests for WorkQueue.ack."""

    async def test_completes_batch_and_records_results(
        self, loaded: WorkQueue, aggregator: Aggregator
    ) -> None:
        """Owner ack completes the batch and forwards results."""
        lease = await loaded.lease("a1")
        assert lease is not None

        await loaded.ack(lease.batch_id, "a1", passing_results(lease.tests, "a1"))

        assert loaded.batches[0].state is BatchState.COMPLETED
        assert loaded.batches[0].lease_owner is None
        assert set(aggregator.results) == set(lease.test_ids)
        assert loaded.agents["a1"].batches_completed == 1

    async def test_rejects_ack_from_non_owner(self, loaded: WorkQueue) -> None:
        """Only the lease owner may ack."""
        lease = await loaded.lease("a1")
        assert lease is not None

        with pytest.raises(StaleAckError) as exc_info:
            await loaded.ack(lease.batch_id, "a2", [])

        assert exc_info.value.batch_id == "b0"
        assert loaded.batches[0].state is BatchState.LEASED

    async def test_rejects_ack_after_requeue(self, loaded: WorkQueue) -> None:
        """A straggler acking a requeued batch is stale."""
        lease = await loaded.lease("a1")
        assert lease is not None
        await loaded.requeue(lease.batch_id)

        with pytest.raises(StaleAckError):
            await loaded.ack(lease.batch_id, "a1", passing_results(lease.tests, "a1"))

    async def test_rejects_second_ack(self, loaded: WorkQueue) -> None:
        """A completed batch cannot be acked again."""
        lease = await loaded.lease("a1")
        assert lease is not None
        await loaded.ack(lease.batch_id, "a1", [])

        with pytest.raises(StaleAckError, match="completed"):
            await loaded.ack(lease.batch_id, "a1", [])

    async def test_drops_results_outside_batch(
        self, loaded: WorkQueue, aggregator: Aggregator
    ) -> None:
        """Results for tests not in the batch are ignored."""
        lease = await loaded.lease("a1")
        assert lease is not None
        foreign = passing_results(make_tests([1], prefix="foreign"), "a1")

        await loaded.ack(
            lease.batch_id, "a1", [*passing_results(lease.tests, "a1"), *foreign]
        )

        assert set(aggregator.results) == set(lease.test_ids)

    async def test_unknown_batch(self, loaded: WorkQueue) -> None:
        """Unknown batch ids are reported, not ignored."""
        with pytest.raises(UnknownBatchError):
            await loaded.ack("nope", "a1", [])

    async def test_reassigned_batch_acks_are_mutually_exclusive(
        self, queue: WorkQueue
    ) -> None:
        """Of the old and new owner acking concurrently, only one succeeds."""
        queue.load(_batches(1))
        first = await queue.lease("a1")
        await queue.requeue("b0")
        second = await queue.lease("a2")
        assert first is not None and second is not None

        outcomes = await asyncio.gather(
            queue.ack("b0", "a1", passing_results(first.tests, "a1")),
            queue.ack("b0", "a2", passing_results(second.tests, "a2")),
            return_exceptions=True,
        )

        assert outcomes[1] is None
        assert isinstance(outcomes[0], StaleAckError)


class TestRequeue:
    """Tests for WorkQueue.requeue."""

    async def test_returns_batch_to_front_of_queue(self, loaded: WorkQueue) -> None:
        """A requeued batch is offered again before later batches."""
        await loaded.lease("a1")
        await loaded.lease("a1")

        state = await loaded.requeue("b0")
        lease = await loaded.lease("a2")

        assert state is BatchState.PENDING
        assert lease is not None
        assert lease.batch_id == "b0"
        assert lease.attempt == 2

    async def test_fails_permanently_after_max_attempts(
        self, queue: WorkQueue
    ) -> None:
        """The third lapse of a three-attempt batch is terminal."""
        queue.load(_batches(1))
        states = []
        for attempt in range(3):
            lease = await queue.lease(f"a{attempt}")
            assert lease is not None
            states.append(await queue.requeue("b0"))

        assert states == [
            BatchState.PENDING,
            BatchState.PENDING,
            BatchState.PERMANENTLY_FAILED,
        ]
        assert queue.permanently_failed() == ["b0"]
        assert queue.is_drained()
        assert await queue.lease("a9") is None

    async def test_ignores_batches_that_are_not_leased(
        self, loaded: WorkQueue
    ) -> None:
        """Requeueing a pending batch changes nothing."""
        state = await loaded.requeue("b1")

        assert state is BatchState.PENDING
        assert loaded.batches[1].attempt_count == 0

    async def test_only_if_expired_skips_renewed_lease(
        self, loaded: WorkQueue, clock: FakeClock
    ) -> None:
        """A lease renewed in the meantime is left alone."""
        await loaded.lease("a1")

        state = await loaded.requeue("b0", only_if_expired=True)

        assert state is BatchState.LEASED

        clock.advance(31)
        assert await loaded.requeue("b0", only_if_expired=True) is BatchState.PENDING


class TestExtendLease:
    """Tests for WorkQueue.extend_lease."""

    async def test_owner_extends_lease(
        self, loaded: WorkQueue, clock: FakeClock
    ) -> None:
        """Renewal pushes the deadline out by the TTL."""
        await loaded.lease("a1")
        clock.advance(20)

        assert await loaded.extend_lease("b0", "a1")
        assert loaded.batches[0].lease_expires_at == clock.now + 30
        assert loaded.expired_leases() == []

    async def test_non_owner_cannot_extend(self, loaded: WorkQueue) -> None:
        """Only the owner may renew."""
        await loaded.lease("a1")

        assert not await loaded.extend_lease("b0", "a2")


class TestLiveness:
    """Tests for heartbeat tracking."""

    async def test_stale_agents(self, queue: WorkQueue, clock: FakeClock) -> None:
        """Agents silent past the heartbeat timeout are reported."""
        await queue.heartbeat("a1")
        await queue.heartbeat("a2")
        clock.advance(45)
        await queue.heartbeat("a2")
        clock.advance(20)

        assert queue.stale_agents() == ["a1"]

    async def test_expired_leases(self, loaded: WorkQueue, clock: FakeClock) -> None:
        """Leases past their deadline are reported."""
        await loaded.lease("a1")
        clock.advance(10)
        await loaded.lease("a2")
        clock.advance(20)

        assert loaded.expired_leases() == ["b0"]


async def test_snapshot_counts_states(queue: WorkQueue) -> None:
    """Snapshot reports batches per state."""
    queue.load(partition(make_tests([5, 4, 3, 2]), agents=4).batches)
    lease = await queue.lease("a1")
    assert lease is not None
    await queue.ack(lease.batch_id, "a1", [])
    await queue.lease("a1")

    snapshot = queue.snapshot()

    assert snapshot[BatchState.COMPLETED] == 1
    assert snapshot[BatchState.LEASED] == 1
    assert snapshot[BatchState.PENDING] == 2
    assert snapshot[BatchState.PERMANENTLY_FAILED] == 0
