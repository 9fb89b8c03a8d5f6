from __future__ import annotations

import os

# The monitor must not poll real quote providers while the app module is imported in tests.
os.environ.setdefault("MONITOR_AUTOSTART", "false")
os.environ.setdefault("INSTRUMENT_STORE", "memory")

import pytest

from app.config import get_settings
from app.services.instrument_repository import get_instrument_repository


@pytest.fixture(autouse=True)
def _fresh_singletons():
    get_settings.cache_clear()
    get_instrument_repository.cache_clear()
    yield
    get_settings.cache_clear()
    get_instrument_repository.cache_clear()
