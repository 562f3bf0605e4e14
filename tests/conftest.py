"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from fakes import FakeEngine


@pytest.fixture
def engine():
    """Fresh in-memory engine: scene Intro, not streaming, not recording."""
    return FakeEngine()


@pytest.fixture
def temp_db():
    """Create temporary database path."""
    with tempfile.TemporaryDirectory() as tmp:
        yield str(Path(tmp) / "deck.db")
