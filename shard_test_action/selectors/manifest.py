"""Selector manifest definition for the plugin system."""

from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from shard_test_action.selectors.base import Selector


@dataclass(frozen=True, kw_only=True)
class SelectorManifest[ConfigT: BaseModel]:
    """What a selector plugin registers under its entry-point key.

    Nothing is imported or connected until ``open`` is called, so listing
    the installed selectors stays cheap.
    """

    config_cls: type[ConfigT]
    selector_factory: Callable[[ConfigT], AbstractAsyncContextManager[Selector]]

    def open(
        self, raw_config: Mapping[str, Any]
    ) -> AbstractAsyncContextManager[Selector]:
        """Validate user configuration and return the selector's lifecycle.

        Raises:
            pydantic.ValidationError: If the configuration does not fit
                ``config_cls``; raised here, before any resource is acquired

        """
        return self.selector_factory(self.config_cls.model_validate(raw_config))
