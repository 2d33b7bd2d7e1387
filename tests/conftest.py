"""
Pytest configuration and fixtures.

Engine tests run against a throwaway SQLite file with the real schema.
For plain helpers shared with unittest-style tests, see tests/mocks/.
"""

import pytest

from notification.catalog import load_catalog
from tests.mocks.notification_mocks import FakeProvider, FrozenClock, make_session_factory


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "concurrency: tests that race real threads against the database"
    )


@pytest.fixture
def session_factory(tmp_path):
    factory = make_session_factory(str(tmp_path))
    yield factory
    factory.kw['bind'].dispose()


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FrozenClock()
