"""Shared fixtures."""

import pytest

from fakes import FakeControlBus


@pytest.fixture
def fake_bus() -> FakeControlBus:
    return FakeControlBus()
