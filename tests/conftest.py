"""Pytest configuration and fixtures for Trusted Stake tests."""

import os
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set env vars before importing trusted_stake modules so cached settings
# never point at real services
os.environ.setdefault("WALLET_ADDRESS", "5TestColdkeyAddress")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ENABLE_RESPONSE_CACHE", "false")
os.environ.setdefault("PNL_EXECUTOR", "inline")
os.environ.setdefault("STATS_PAGE_DELAY_SECONDS", "0")
os.environ.setdefault("API_BASE_URL", "https://api.test.local")

COLDKEY = "5TestColdkeyAddress"


@pytest.fixture
def coldkey() -> str:
    return COLDKEY


@pytest.fixture
def mock_settings():
    """Provide mock settings for testing."""
    from unittest.mock import MagicMock

    settings = MagicMock()
    settings.wallet_address = COLDKEY
    settings.chain_read_concurrency = 4
    settings.strict_fixed_point_decode = False
    settings.pnl_cache_max_entries = 8
    settings.pnl_executor = "inline"
    settings.pnl_max_workers = 1
    settings.enable_response_cache = False
    return settings
