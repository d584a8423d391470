"""HTTP boundary for running agents in separate processes."""

from shard_test_action.service.client import HttpQueueClient
from shard_test_action.service.config import QueueClientConfig
from shard_test_action.service.server import create_app, serve_queue

__all__ = ["HttpQueueClient", "QueueClientConfig", "create_app", "serve_queue"]
