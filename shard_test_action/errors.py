"""Exceptions raised by the test sharding core."""


class ShardTestError(Exception):
    """Base class for all errors raised by shard_test_action."""


class SelectorUnavailable(ShardTestError):
    """Raised when the test selector errors or returns malformed data."""


class StaleAckError(ShardTestError):
    """Raised when an ack arrives from an agent that no longer owns the lease."""

    def __init__(self, batch_id: str, agent_id: str, reason: str) -> None:
        super().__init__(f"Stale ack for {batch_id} from {agent_id}: {reason}")
        self.batch_id = batch_id
        self.agent_id = agent_id
        self.reason = reason


class UnknownBatchError(ShardTestError):
    """Raised when an operation references a batch the queue never loaded."""


class QueueClosedError(ShardTestError):
    """Raised when batches are loaded into a queue that already started."""


class ChangeDetectionError(ShardTestError):
    """Raised when the files changed in the pipeline cannot be determined."""
