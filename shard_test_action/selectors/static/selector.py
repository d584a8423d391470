"""Selector reading a precomputed test list from a JSON file."""

import json
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from shard_test_action.errors import SelectorUnavailable
from shard_test_action.models.test_case import TestCase
from shard_test_action.selectors.base import Selector, parse_selection
from shard_test_action.selectors.static.config import StaticSelectorConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class StaticSelector(Selector):
    """Returns every test listed in a JSON file, whatever changed.

    Useful when an earlier pipeline step already ran test selection and
    stored its response.
    """

    config: StaticSelectorConfig

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: StaticSelectorConfig
    ) -> AsyncGenerator["StaticSelector", None]:
        """Create selector from configuration."""
        yield cls(config=config)

    async def select(self, changed_files: Sequence[str]) -> Sequence[TestCase]:
        """Load and validate the test list from disk."""
        log.info("Reading test selection from %s", self.config.path)
        try:
            payload = json.loads(self.config.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SelectorUnavailable(
                f"Cannot read selection file {self.config.path}: {e}"
            ) from e
        return parse_selection(payload)
