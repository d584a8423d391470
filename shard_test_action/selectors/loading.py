"""Discovery of installed selector plugins."""

from collections.abc import Sequence
from importlib.metadata import entry_points
from typing import Any

from shard_test_action.errors import ShardTestError
from shard_test_action.selectors.manifest import SelectorManifest

ENTRY_POINT_GROUP = "shard_test_action.selectors"


class SelectorNotFoundError(ShardTestError):
    """Raised when no installed plugin registers the requested key."""

    def __init__(self, key: str, available: Sequence[str]) -> None:
        super().__init__(
            f"Selector '{key}' not found. Available selectors: "
            f"{', '.join(available) or 'none'}"
        )
        self.key = key
        self.available = available


def available_selectors() -> Sequence[str]:
    """Keys of every installed selector, sorted."""
    return sorted({entry.name for entry in entry_points(group=ENTRY_POINT_GROUP)})


def load_selector_manifest(key: str) -> SelectorManifest[Any]:
    """Import the manifest registered under ``key``.

    Raises:
        SelectorNotFoundError: If no plugin registers the key
        TypeError: If the entry point does not resolve to a manifest

    """
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    if not matches:
        raise SelectorNotFoundError(key, available_selectors())

    entry = next(iter(matches))
    manifest = entry.load()
    if not isinstance(manifest, SelectorManifest):
        raise TypeError(f"Entry point {entry.value} is not a SelectorManifest")
    return manifest
