"""Coordinator for one sharded test run."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from types import TracebackType

from shard_test_action.aggregator import Aggregator
from shard_test_action.config import RunConfig
from shard_test_action.errors import SelectorUnavailable
from shard_test_action.failure_handler import FailureHandler
from shard_test_action.models.result import Verdict
from shard_test_action.models.test_case import TestCase
from shard_test_action.partitioner import PartitionPlan, partition
from shard_test_action.selectors.base import Selector
from shard_test_action.work_queue import WorkQueue

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class RunHandle:
    """State of a single pipeline invocation.

    Owns the queue, the aggregator and the failure-handler task for exactly
    one run; nothing is shared between runs.
    """

    config: RunConfig
    tests: Sequence[TestCase]
    plan: PartitionPlan
    queue: WorkQueue
    aggregator: Aggregator
    started_at: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    failure_task: asyncio.Task[None] | None = field(default=None, repr=False)
    finished_at: float | None = field(default=None, init=False)
    budget_exhausted: bool = field(default=False, init=False)

    @property
    def deadline(self) -> float:
        """Clock value at which the pipeline budget runs out."""
        return self.started_at + self.config.budget

    def is_complete(self) -> bool:
        """Whether no batch is pending or leased any more."""
        return self.queue.is_drained()

    def abort(self) -> None:
        """Stop issuing leases; in-flight batches finish or lapse normally."""
        self.queue.close()
        if self.finished_at is None:
            self.finished_at = self.clock()

    async def await_completion(self, timeout: float | None = None) -> bool:
        """Wait until the run completes or the budget elapses.

        Args:
            timeout: Optional caller limit in seconds, on top of the budget

        Returns:
            True if every batch reached a terminal state, False if the budget
            ran out (the run is aborted) or the caller's timeout elapsed

        """
        wait_until = self.deadline
        if timeout is not None:
            wait_until = min(wait_until, self.clock() + timeout)

        while True:
            if self.is_complete():
                if self.finished_at is None:
                    self.finished_at = self.clock()
                log.info("All batches reached a terminal state")
                return True

            now = self.clock()
            if now >= self.deadline:
                log.warning(
                    "Budget of %.1fs exhausted with %s, aborting",
                    self.config.budget,
                    {str(k): v for k, v in self.queue.snapshot().items()},
                )
                self.budget_exhausted = True
                self.abort()
                return False

            if now >= wait_until:
                return False

            await asyncio.sleep(min(self.config.poll_interval, wait_until - now))

    async def settle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight leases to ack or lapse after an abort.

        Returns:
            True if no batch is leased any more

        """
        if timeout is None:
            timeout = self.config.lease_ttl + 2 * self.config.check_interval
        wait_until = self.clock() + timeout

        while self.queue.has_leases():
            now = self.clock()
            if now >= wait_until:
                log.warning("Leases still outstanding after %.1fs", timeout)
                return False
            await asyncio.sleep(min(self.config.poll_interval, wait_until - now))
        return True

    def verdict(self) -> Verdict:
        """Final verdict from the results recorded so far."""
        end = self.finished_at if self.finished_at is not None else self.clock()
        return self.aggregator.verdict(
            [test.test_id for test in self.tests],
            elapsed=end - self.started_at,
            budget=self.config.budget,
            permanently_failed_batches=self.queue.permanently_failed(),
            budget_exhausted=self.budget_exhausted,
        )

    async def close(self) -> None:
        """Stop the failure handler."""
        if self.failure_task is not None:
            self.failure_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.failure_task
            self.failure_task = None

    async def __aenter__(self) -> "RunHandle":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


@dataclass(frozen=True, kw_only=True)
class Coordinator:
    """Starts runs: selects tests, partitions them and seeds a fresh queue."""

    selector: Selector
    config: RunConfig = field(default_factory=RunConfig)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    async def start_run(self, changed_files: Sequence[str]) -> RunHandle:
        """Start a run for the given changed files.

        Args:
            changed_files: Paths changed in the pipeline, passed to the selector

        Returns:
            Handle for monitoring the run

        Raises:
            SelectorUnavailable: If the selector fails; nothing is leased

        """
        started_at = self.clock()
        log.info("Selecting tests for %d changed file(s)", len(changed_files))
        try:
            tests = await self.selector.select(changed_files)
        except SelectorUnavailable:
            raise
        except Exception as e:
            raise SelectorUnavailable(f"Selector failed: {e}") from e

        log.info("Selector returned %d test(s)", len(tests))
        plan = partition(tests, self.config.agents, self.config.chunk_factor)

        aggregator = Aggregator()
        queue = WorkQueue(
            aggregator=aggregator,
            lease_ttl=self.config.lease_ttl,
            max_attempts=self.config.max_attempts,
            heartbeat_timeout=self.config.heartbeat_timeout,
            clock=self.clock,
        )
        queue.load(plan.batches)

        handler = FailureHandler(queue=queue, interval=self.config.check_interval)
        return RunHandle(
            config=self.config,
            tests=tests,
            plan=plan,
            queue=queue,
            aggregator=aggregator,
            started_at=started_at,
            clock=self.clock,
            failure_task=asyncio.create_task(handler.run()),
        )
