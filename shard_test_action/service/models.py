"""Pydantic models for the work queue HTTP API."""

from collections.abc import Mapping, Sequence

from pydantic import Field

from shard_test_action.models.base import Model
from shard_test_action.models.batch import AgentStatus, BatchState, Lease
from shard_test_action.models.result import RunResult


class LeaseRequest(Model):
    """Body of POST /lease."""

    agent_id: str = Field(..., min_length=1)


class LeaseResponse(Model):
    """Response of POST /lease.

    No lease and no retry means the agent should stop; retry means nothing
    was available within the server's long-poll window.
    """

    lease: Lease | None = None
    retry: bool = False


class AckRequest(Model):
    """Body of POST /ack."""

    batch_id: str
    agent_id: str = Field(..., min_length=1)
    results: Sequence[RunResult] = Field(default_factory=list)


class ExtendRequest(Model):
    """Body of POST /extend."""

    batch_id: str
    agent_id: str = Field(..., min_length=1)


class ExtendResponse(Model):
    """Response of POST /extend."""

    extended: bool


class HeartbeatResponse(Model):
    """Response of POST /agents/{agent_id}/heartbeat."""

    status: AgentStatus


class ErrorResponse(Model):
    """Body of any 4xx response."""

    error: str


class StatusResponse(Model):
    """Response of GET /status."""

    closed: bool
    batches: Mapping[BatchState, int]
    agents: Mapping[str, AgentStatus]
