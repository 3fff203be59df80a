"""
pytest configuration and shared fixtures.
"""

import pytest
import numpy as np

from pymixed import reset_optimizer_defaults


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture(autouse=True)
def _default_optimizer(monkeypatch):
    """Every test starts from the built-in optimizer defaults."""
    monkeypatch.delenv("PYMIXED_OPTIMIZER", raising=False)
    monkeypatch.delenv("PYMIXED_MAXFEVAL", raising=False)
    reset_optimizer_defaults()
    yield
    reset_optimizer_defaults()
