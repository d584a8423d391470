"""Tests for LPT partitioning with guided chunking."""

from collections import Counter

import pytest

from shard_test_action.partitioner import assign, chunk, partition
from shard_test_action.testing.factories import TestCaseFactory, make_tests


class TestAssign:
    """Tests for the LPT assignment step."""

    def test_balances_reference_durations_within_ten_percent(self) -> None:
        """Balances the 10/5/2 second workload evenly over four agents."""
        seconds = [10, 10, 10, 10, 5, 5, 5, 5, 2, 2, 2, 2]
        tests = make_tests([s * 1000 for s in seconds])

        plan = partition(tests, agents=4)

        mean = sum(plan.loads) / 4
        assert all(abs(load - mean) <= 0.1 * mean for load in plan.loads)

    def test_largest_tests_land_on_distinct_accumulators(self) -> None:
        """The N longest tests each start a different accumulator."""
        tests = make_tests([50, 40, 30, 1, 1, 1])

        assignments = assign(tests, agents=3)

        firsts = sorted(acc[0].estimated_duration_ms for acc in assignments)
        assert firsts == [30, 40, 50]

    def test_spreads_zero_duration_tests(self) -> None:
        """Tests without an estimate are spread by count."""
        tests = make_tests([0] * 8)

        assignments = assign(tests, agents=4)

        assert [len(acc) for acc in assignments] == [2, 2, 2, 2]

    def test_max_load_within_list_scheduling_bound(self) -> None:
        """Max load never exceeds mean load plus the longest test."""
        tests = TestCaseFactory.batch(size=60)

        plan = partition(tests, agents=7)

        total = sum(t.estimated_duration_ms for t in tests)
        longest = max(t.estimated_duration_ms for t in tests)
        assert max(plan.loads) <= total / 7 + longest


class TestChunk:
    """Tests for guided chunking of one accumulator."""

    def test_batches_shrink_towards_the_end(self) -> None:
        """Each batch targets a fraction of the remaining duration."""
        tests = make_tests([100] * 20)

        batches = chunk(tests, agents=1, chunk_factor=2)

        assert [len(b) for b in batches] == [10, 5, 3, 1, 1]

    def test_oversized_test_is_its_own_batch(self) -> None:
        """A test larger than the target is never split or merged."""
        tests = make_tests([1_000_000, 10, 10, 10])

        batches = chunk(tests, agents=2, chunk_factor=2)

        assert [t.estimated_duration_ms for t in batches[0]] == [1_000_000]

    def test_zero_duration_tests_chunk_by_count(self) -> None:
        """Falls back to test counts when nothing has a duration."""
        tests = make_tests([0] * 8)

        batches = chunk(tests, agents=2, chunk_factor=2)

        assert [len(b) for b in batches] == [2, 2, 1, 1, 1, 1]

    def test_empty_accumulator(self) -> None:
        """An accumulator without tests yields no batches."""
        assert chunk([], agents=3, chunk_factor=2) == []


class TestPartition:
    """Tests for the full partition plan."""

    def test_empty_input_yields_empty_plan(self) -> None:
        """No tests means no batches."""
        plan = partition([], agents=4)

        assert plan.batches == []
        assert plan.loads == [0, 0, 0, 0]

    def test_preserves_exact_test_multiset(self) -> None:
        """Every input test appears in exactly one batch."""
        tests = TestCaseFactory.batch(size=80)

        plan = partition(tests, agents=5, chunk_factor=3)

        partitioned = Counter(tid for batch in plan.batches for tid in batch.test_ids)
        assert partitioned == Counter(t.test_id for t in tests)

    def test_interleaves_accumulators(self) -> None:
        """The first round offers one batch from every accumulator."""
        tests = make_tests([10, 10, 10, 10, 5, 5, 5, 5, 2, 2, 2, 2])

        plan = partition(tests, agents=4)

        owners = []
        for batch in plan.batches[:4]:
            first = batch.tests[0]
            owners.append(
                next(i for i, acc in enumerate(plan.assignments) if first in acc)
            )
        assert sorted(owners) == [0, 1, 2, 3]

    def test_batches_are_numbered_in_sequence(self) -> None:
        """Batch ids and sequence numbers follow the offered order."""
        plan = partition(make_tests([5, 4, 3, 2, 1]), agents=2)

        assert [b.sequence for b in plan.batches] == list(range(len(plan.batches)))
        assert plan.batches[0].batch_id == "batch-0001"

    def test_more_agents_than_tests(self) -> None:
        """Idle accumulators contribute no batches."""
        plan = partition(make_tests([7, 3]), agents=5)

        assert len(plan.batches) == 2
        assert sorted(plan.loads) == [0, 0, 0, 3, 7]

    @pytest.mark.parametrize(("agents", "chunk_factor"), [(0, 2), (2, 0)])
    def test_rejects_invalid_parameters(self, agents: int, chunk_factor: int) -> None:
        """Agents and chunk factor must be positive."""
        with pytest.raises(ValueError, match="must be >= 1"):
            partition(make_tests([1]), agents=agents, chunk_factor=chunk_factor)
