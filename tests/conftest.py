"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Reload settings from a clean environment for each test."""
    from src.settings import get_settings

    for name in (
        "TAXLOTS_DATABASE_URL",
        "TAXLOTS_LOG_LEVEL",
        "TAXLOTS_LOG_FORMAT",
        "TAXLOTS_SLOW_OPERATION_MS",
        "TAXLOTS_DEFAULT_SHORT_TERM_THRESHOLD_DAYS",
        "TAXLOTS_DEFAULT_WASH_SALE_WINDOW_DAYS",
        "TAXLOTS_DEFAULT_HARVEST_THRESHOLD_PERCENT",
        "TAXLOTS_DEFAULT_MIN_HARVEST_AMOUNT",
    ):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
