"""Static file selector module."""

from shard_test_action.selectors.static.config import StaticSelectorConfig
from shard_test_action.selectors.static.manifest import static_manifest
from shard_test_action.selectors.static.selector import StaticSelector

__all__ = ["StaticSelector", "StaticSelectorConfig", "static_manifest"]
