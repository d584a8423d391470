"""Abstract base class for test selectors."""

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter, ValidationError

from shard_test_action.errors import SelectorUnavailable
from shard_test_action.models.test_case import TestCase

_selection_adapter = TypeAdapter(list[TestCase])


@dataclass(frozen=True, kw_only=True)
class Selector(ABC):
    """Abstract base for test selectors.

    A selector maps the files changed in a pipeline to the tests that must
    run, each with an estimated duration. Any failure must surface as
    SelectorUnavailable: a partial selection is never acceptable.
    """

    @abstractmethod
    async def select(self, changed_files: Sequence[str]) -> Sequence[TestCase]:
        """Return the tests to run for the given changed files.

        Args:
            changed_files: Repository-relative paths changed in the pipeline

        Returns:
            Test cases with estimated durations

        Raises:
            SelectorUnavailable: If the selection cannot be obtained in full

        """


def parse_selection(payload: Any) -> Sequence[TestCase]:
    """Validate a selector response payload.

    Args:
        payload: Decoded JSON, expected to be a list of
            ``{"testId", "filePath", "estimatedDurationMs"}`` objects

    Returns:
        Validated test cases in response order

    Raises:
        SelectorUnavailable: If the payload is malformed or repeats a test id

    """
    try:
        tests = _selection_adapter.validate_python(payload)
    except ValidationError as e:
        raise SelectorUnavailable(f"Malformed selector response: {e}") from e

    counts = Counter(test.test_id for test in tests)
    duplicates = sorted(test_id for test_id, count in counts.items() if count > 1)
    if duplicates:
        raise SelectorUnavailable(
            f"Selector returned duplicate test ids: {', '.join(duplicates)}"
        )
    return tests
