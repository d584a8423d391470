"""Models for batches of work and the agents that lease them."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import Field

from shard_test_action.models.base import Model
from shard_test_action.models.test_case import TestCase


class BatchState(StrEnum):
    """Lifecycle of a batch inside the work queue."""

    PENDING = "pending"
    LEASED = "leased"
    COMPLETED = "completed"
    PERMANENTLY_FAILED = "permanently_failed"


class AgentStatus(StrEnum):
    """Liveness of a registered agent."""

    ALIVE = "alive"
    DEAD = "dead"


@dataclass(kw_only=True)
class Batch:
    """A group of tests leased and acknowledged as a unit.

    Created by the partitioner and owned by the work queue until it
    reaches a terminal state.
    """

    batch_id: str
    sequence: int
    tests: Sequence[TestCase]
    state: BatchState = BatchState.PENDING
    lease_owner: str | None = None
    lease_expires_at: float | None = None
    attempt_count: int = 0

    @property
    def test_ids(self) -> Sequence[str]:
        """Identifiers of the tests in this batch."""
        return [test.test_id for test in self.tests]

    @property
    def total_estimated_duration_ms(self) -> int:
        """Sum of the estimated durations of all tests in the batch."""
        return sum(test.estimated_duration_ms for test in self.tests)

    @property
    def is_terminal(self) -> bool:
        """Whether the batch will never be leased again."""
        return self.state in {BatchState.COMPLETED, BatchState.PERMANENTLY_FAILED}


@dataclass(kw_only=True)
class Agent:
    """A worker process known to the queue."""

    agent_id: str
    last_heartbeat_at: float
    status: AgentStatus = AgentStatus.ALIVE
    batches_completed: int = field(default=0)


class Lease(Model):
    """Immutable snapshot of a batch handed to the agent that leased it."""

    batch_id: str = Field(..., description="Leased batch identifier")
    tests: Sequence[TestCase] = Field(..., description="Tests to execute")
    attempt: int = Field(..., ge=1, description="1-based attempt number")
    lease_ttl: float = Field(..., gt=0, description="Seconds until the lease lapses")

    @property
    def test_ids(self) -> Sequence[str]:
        """Identifiers of the leased tests."""
        return [test.test_id for test in self.tests]
