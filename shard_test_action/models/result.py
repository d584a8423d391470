"""Models for test execution results and the final run verdict."""

from dataclasses import dataclass, field
from typing import Literal

type RunStatus = Literal["pass", "fail", "error"]
type VerdictStatus = Literal[
    "success", "test_failures", "budget_exceeded", "incomplete"
]

EXIT_CODES: dict[VerdictStatus, int] = {
    "success": 0,
    "test_failures": 1,
    "budget_exceeded": 2,
    "incomplete": 3,
}


@dataclass(frozen=True, kw_only=True)
class RunResult:
    """Outcome of one test executed by one agent."""

    test_id: str
    agent_id: str
    status: RunStatus
    actual_duration_ms: int
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class Verdict:
    """Final outcome of a run.

    Test failures, budget overrun and missing coverage are independent
    signals; ``status`` only picks the most severe one for the exit code.
    """

    tests_failed: bool
    budget_exceeded: bool
    incomplete: bool
    total: int
    passed: int
    failed: int
    errors: int
    elapsed: float
    missing_test_ids: tuple[str, ...] = field(default=())
    permanently_failed_batches: tuple[str, ...] = field(default=())

    @property
    def status(self) -> VerdictStatus:
        """Headline status, most severe signal first."""
        if self.incomplete:
            return "incomplete"
        if self.budget_exceeded:
            return "budget_exceeded"
        if self.tests_failed:
            return "test_failures"
        return "success"

    @property
    def exit_code(self) -> int:
        """Process exit code for the headline status."""
        return EXIT_CODES[self.status]
