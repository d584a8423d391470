"""Configuration for the static file selector."""

from pathlib import Path

from pydantic import BaseModel


class StaticSelectorConfig(BaseModel):
    """Configuration for the static file selector."""

    path: Path
