import pytest

from .fakes import FakeClock


@pytest.fixture
def events():
    """Calls made to the test doubles, in order."""
    return []


@pytest.fixture
def clock():
    return FakeClock()
