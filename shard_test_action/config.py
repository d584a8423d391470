"""Configuration for a sharded test run."""

from typing import Self

from pydantic import BaseModel, Field, model_validator


class RunConfig(BaseModel):
    """Tunables for partitioning, leasing and the run budget.

    All durations are in seconds.
    """

    agents: int = Field(default=4, ge=1, description="Parallel agents to plan for")
    chunk_factor: int = Field(
        default=2, ge=1, description="Guided self-scheduling divisor (K)"
    )
    lease_ttl: float = Field(default=300, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    heartbeat_timeout: float = Field(default=60, gt=0)
    check_interval: float = Field(default=5, gt=0)
    budget: float = Field(default=1800, gt=0, description="Pipeline duration budget")
    poll_interval: float = Field(default=1, gt=0)

    @model_validator(mode="after")
    def _check_liveness_windows(self) -> Self:
        window = min(self.lease_ttl, self.heartbeat_timeout)
        if self.check_interval >= window:
            raise ValueError(
                f"check_interval ({self.check_interval}s) must be shorter than "
                f"both lease_ttl and heartbeat_timeout ({window}s)"
            )
        return self

    @property
    def heartbeat_interval(self) -> float:
        """How often in-process agents heartbeat and renew their lease.

        Three beats fit in the shorter of the lease and heartbeat windows.
        """
        return min(self.lease_ttl, self.heartbeat_timeout) / 3
