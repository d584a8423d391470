"""External command selector manifest."""

from shard_test_action.selectors.command.config import CommandSelectorConfig
from shard_test_action.selectors.command.selector import CommandSelector
from shard_test_action.selectors.manifest import SelectorManifest

command_manifest = SelectorManifest(
    config_cls=CommandSelectorConfig,
    selector_factory=CommandSelector.from_config,
)
