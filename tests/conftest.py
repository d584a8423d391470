"""Shared fixtures for all test suites."""

from collections.abc import Generator

import pytest
from aioresponses import aioresponses as aioresponses_cls

from shard_test_action.aggregator import Aggregator
from shard_test_action.testing.clock import FakeClock
from shard_test_action.work_queue import WorkQueue


@pytest.fixture
def aioresponses() -> Generator[aioresponses_cls, None, None]:
    """Intercept aiohttp client requests."""
    with aioresponses_cls() as mocked:
        yield mocked


@pytest.fixture
def clock() -> FakeClock:
    """Create a clock that only moves when advanced."""
    return FakeClock()


@pytest.fixture
def aggregator() -> Aggregator:
    """Create an empty aggregator."""
    return Aggregator()


@pytest.fixture
def queue(aggregator: Aggregator, clock: FakeClock) -> WorkQueue:
    """Create an empty queue driven by the fake clock."""
    return WorkQueue(
        aggregator=aggregator,
        lease_ttl=30,
        max_attempts=3,
        heartbeat_timeout=60,
        clock=clock,
    )
