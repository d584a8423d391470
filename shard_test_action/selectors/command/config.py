"""Configuration for the external command selector."""

from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, Field


class CommandSelectorConfig(BaseModel):
    """Configuration for the external command selector."""

    command: Sequence[str] = Field(..., min_length=1)
    cwd: Path | None = None
    timeout: float = Field(default=120, gt=0)
