"""Longest-processing-time-first partitioning with guided chunking."""

import heapq
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from shard_test_action.models.batch import Batch
from shard_test_action.models.test_case import TestCase

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class PartitionPlan:
    """Ordered batch sequence plus the per-accumulator balance behind it."""

    batches: Sequence[Batch]
    assignments: Sequence[Sequence[TestCase]]

    @property
    def loads(self) -> Sequence[int]:
        """Estimated total duration assigned to each accumulator."""
        return [
            sum(test.estimated_duration_ms for test in tests)
            for tests in self.assignments
        ]


def partition(
    tests: Sequence[TestCase], agents: int, chunk_factor: int = 2
) -> PartitionPlan:
    """Split tests into an ordered sequence of balanced batches.

    Args:
        tests: Every test case selected for the run
        agents: Number of accumulators to balance across
        chunk_factor: Guided self-scheduling divisor; larger values give
            smaller batches

    Returns:
        Plan whose batches, pulled in order by any number of agents,
        preserve the LPT balance

    Raises:
        ValueError: If agents or chunk_factor is below one

    """
    if agents < 1:
        raise ValueError(f"agents must be >= 1, got {agents}")
    if chunk_factor < 1:
        raise ValueError(f"chunk_factor must be >= 1, got {chunk_factor}")

    assignments = assign(tests, agents)
    chunked = [chunk(tests_k, agents, chunk_factor) for tests_k in assignments]

    batches: list[Batch] = []
    for round_index in range(max((len(c) for c in chunked), default=0)):
        for accumulator in chunked:
            if round_index < len(accumulator):
                sequence = len(batches)
                batches.append(
                    Batch(
                        batch_id=f"batch-{sequence + 1:04d}",
                        sequence=sequence,
                        tests=accumulator[round_index],
                    )
                )

    plan = PartitionPlan(batches=batches, assignments=assignments)
    log.info(
        "Partitioned %d test(s) into %d batch(es) for %d agent(s), loads=%s",
        len(tests),
        len(batches),
        agents,
        list(plan.loads),
    )
    return plan


def assign(tests: Sequence[TestCase], agents: int) -> Sequence[Sequence[TestCase]]:
    """Assign tests to accumulators, longest first, least-loaded wins.

    Ties on load go to the accumulator holding fewer tests.
    """
    ordered = sorted(tests, key=lambda test: test.estimated_duration_ms, reverse=True)
    assignments: list[list[TestCase]] = [[] for _ in range(agents)]
    heap = [(0, 0, index) for index in range(agents)]

    for test in ordered:
        load, count, index = heapq.heappop(heap)
        assignments[index].append(test)
        heapq.heappush(heap, (load + test.estimated_duration_ms, count + 1, index))

    return assignments


def chunk(
    tests: Sequence[TestCase], agents: int, chunk_factor: int
) -> Sequence[Sequence[TestCase]]:
    """Group one accumulator's tests into batches that shrink towards the end.

    Each batch targets ``ceil(remaining / (chunk_factor * agents))`` of the
    accumulator's remaining estimated duration. When nothing with a
    duration remains, the same formula is applied to the test count.
    Every batch holds at least one test.
    """
    divisor = chunk_factor * agents
    remaining_ms = sum(test.estimated_duration_ms for test in tests)
    batches: list[list[TestCase]] = []
    position = 0

    while position < len(tests):
        batch: list[TestCase] = []
        if remaining_ms > 0:
            target = math.ceil(remaining_ms / divisor)
            batch_ms = 0
            while position < len(tests) and (not batch or batch_ms < target):
                test = tests[position]
                batch.append(test)
                batch_ms += test.estimated_duration_ms
                position += 1
            remaining_ms -= batch_ms
        else:
            size = math.ceil((len(tests) - position) / divisor)
            batch = list(tests[position : position + size])
            position += size
        batches.append(batch)

    return batches
