"""Test selectors: the source of truth for what a run must execute."""
