"""Local execution of leased tests through an external test runner."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from shard_test_action.models.batch import Lease
from shard_test_action.models.result import RunResult, RunStatus
from shard_test_action.models.test_case import TestCase

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class TestExecutor(ABC):
    """Abstract base for whatever actually runs the tests."""

    __test__ = False

    @abstractmethod
    async def execute(self, lease: Lease, agent_id: str) -> Sequence[RunResult]:
        """Run every test in the lease.

        A failing test is a result, not an exception. Raising means the
        batch could not be run at all and is left to lease expiry.

        Args:
            lease: Batch leased by the agent
            agent_id: Identity of the executing agent

        Returns:
            One result per leased test

        """


@dataclass(frozen=True, kw_only=True)
class CommandExecutor(TestExecutor):
    """Runs one command per test.

    Each argument of ``command`` is formatted with ``{test_id}`` and
    ``{file_path}``; literal braces must be doubled. Exit code 0 is a pass,
    anything else a failure; a command that cannot be started or times out
    is an error.
    """

    command: Sequence[str]
    cwd: Path | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        for arg in self.command:
            try:
                arg.format(test_id="", file_path="")
            except (AttributeError, KeyError, IndexError, ValueError) as e:
                raise ValueError(
                    f"Invalid command template argument {arg!r}: {e!r}. Only "
                    "{test_id} and {file_path} are substituted; double other braces"
                ) from e

    async def execute(self, lease: Lease, agent_id: str) -> Sequence[RunResult]:
        """Run the leased tests one after another."""
        return [await self._run_test(test, agent_id) for test in lease.tests]

    async def _run_test(self, test: TestCase, agent_id: str) -> RunResult:
        argv = [
            arg.format(test_id=test.test_id, file_path=test.file_path)
            for arg in self.command
        ]
        started = time.monotonic()

        def result(status: RunStatus, message: str | None = None) -> RunResult:
            return RunResult(
                test_id=test.test_id,
                agent_id=agent_id,
                status=status,
                actual_duration_ms=int((time.monotonic() - started) * 1000),
                message=message,
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            log.error("Cannot start test %s: %s", test.test_id, e)
            return result("error", f"Cannot start test command: {e}")

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            log.error("Test %s timed out after %ss", test.test_id, self.timeout)
            return result("error", f"Timed out after {self.timeout}s")

        if process.returncode == 0:
            return result("pass")

        output = stdout.decode(errors="replace").strip()
        log.info("Test %s failed with exit code %d", test.test_id, process.returncode)
        return result("fail", output[-2000:] or f"Exit code {process.returncode}")
