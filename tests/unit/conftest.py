"""Shared fixtures for unit tests."""

import pytest

from phase_shepherd.core.config import clear_config_cache
from tests.unit.shepherd_fixtures import make_store


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def store():
    return make_store()
