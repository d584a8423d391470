"""Static file selector manifest."""

from shard_test_action.selectors.manifest import SelectorManifest
from shard_test_action.selectors.static.config import StaticSelectorConfig
from shard_test_action.selectors.static.selector import StaticSelector

static_manifest = SelectorManifest(
    config_cls=StaticSelectorConfig,
    selector_factory=StaticSelector.from_config,
)
