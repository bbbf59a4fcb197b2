"""Shared fixtures for reloadkit tests."""

from __future__ import annotations

import pytest

from reloadkit import FactoryLoader, ManualClock, Runtime
from reloadkit.hooks import reset_hook_registry
from reloadkit.logging import reset_logging


@pytest.fixture
def loader():
    """Create an empty factory loader."""
    return FactoryLoader()


@pytest.fixture
def clock():
    """Create a manual clock starting at zero."""
    return ManualClock()


@pytest.fixture
def runtime(loader, clock):
    """Create a runtime driven by the manual clock."""
    return Runtime(loader, clock=clock)


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global registries between tests."""
    reset_hook_registry()
    yield
    reset_hook_registry()
    reset_logging()
