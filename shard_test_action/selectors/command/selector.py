"""Selector delegating to an external command."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from shard_test_action.errors import SelectorUnavailable
from shard_test_action.models.test_case import TestCase
from shard_test_action.selectors.base import Selector, parse_selection
from shard_test_action.selectors.command.config import CommandSelectorConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class CommandSelector(Selector):
    """Runs an external selection command.

    The changed files are written to the command's stdin as a JSON list and
    the selection is read back from stdout.
    """

    config: CommandSelectorConfig

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: CommandSelectorConfig
    ) -> AsyncGenerator["CommandSelector", None]:
        """Create selector from configuration."""
        yield cls(config=config)

    async def select(self, changed_files: Sequence[str]) -> Sequence[TestCase]:
        """Run the command and validate its output."""
        log.info(
            "Running selector command %s for %d changed file(s)",
            " ".join(self.config.command),
            len(changed_files),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self.config.command,
                cwd=self.config.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SelectorUnavailable(f"Cannot start selector command: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(json.dumps(list(changed_files)).encode()),
                timeout=self.config.timeout,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise SelectorUnavailable(
                f"Selector command did not finish within {self.config.timeout}s"
            ) from e

        if process.returncode != 0:
            raise SelectorUnavailable(
                f"Selector command failed ({process.returncode}): "
                f"{stderr.decode().strip()}"
            )

        try:
            payload = json.loads(stdout)
        except ValueError as e:
            raise SelectorUnavailable(f"Selector output is not JSON: {e}") from e
        return parse_selection(payload)
