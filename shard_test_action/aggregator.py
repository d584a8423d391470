"""Collection of per-test results and computation of the run verdict."""

import logging
from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field

from shard_test_action.models.result import RunResult, Verdict

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class Aggregator:
    """Accumulates results keyed by test id.

    The first result recorded for a test wins; later duplicates (a straggler
    re-executing a batch that was already reassigned) are counted and
    dropped.
    """

    _results: dict[str, RunResult] = field(default_factory=dict, init=False)
    duplicates: int = field(default=0, init=False)

    @property
    def results(self) -> Mapping[str, RunResult]:
        """Recorded results by test id."""
        return self._results

    def record(self, results: Iterable[RunResult]) -> int:
        """Record results, returning how many were new."""
        added = 0
        for result in results:
            if result.test_id in self._results:
                self.duplicates += 1
                log.debug(
                    "Ignoring duplicate result for %s from %s",
                    result.test_id,
                    result.agent_id,
                )
                continue
            self._results[result.test_id] = result
            added += 1
        return added

    def verdict(
        self,
        expected_test_ids: Collection[str],
        elapsed: float,
        budget: float,
        permanently_failed_batches: Collection[str] = (),
        budget_exhausted: bool = False,
    ) -> Verdict:
        """Compute the final verdict for the run.

        Args:
            expected_test_ids: Every test id the selector returned
            elapsed: Seconds from run start until now
            budget: Pipeline duration budget in seconds
            permanently_failed_batches: Batches that exhausted their attempts
            budget_exhausted: Whether the run was aborted at its deadline,
                which counts as exceeding the budget even when the measured
                elapsed time lands exactly on it

        Returns:
            Verdict with independent failure, budget and coverage signals

        """
        statuses = [
            self._results[test_id].status
            for test_id in expected_test_ids
            if test_id in self._results
        ]
        missing = tuple(
            sorted(
                test_id
                for test_id in expected_test_ids
                if test_id not in self._results
            )
        )
        failed = statuses.count("fail")
        errors = statuses.count("error")
        budget_exceeded = budget_exhausted or elapsed > budget

        return Verdict(
            tests_failed=bool(failed or errors),
            budget_exceeded=budget_exceeded,
            incomplete=bool(permanently_failed_batches)
            or (bool(missing) and not budget_exceeded),
            total=len(expected_test_ids),
            passed=statuses.count("pass"),
            failed=failed,
            errors=errors,
            elapsed=elapsed,
            missing_test_ids=missing,
            permanently_failed_batches=tuple(sorted(permanently_failed_batches)),
        )
