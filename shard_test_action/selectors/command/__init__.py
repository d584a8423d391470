"""External command selector module."""

from shard_test_action.selectors.command.config import CommandSelectorConfig
from shard_test_action.selectors.command.manifest import command_manifest
from shard_test_action.selectors.command.selector import CommandSelector

__all__ = ["CommandSelector", "CommandSelectorConfig", "command_manifest"]
