"""Guard test to ensure no import-time side effects.

This test verifies that importing trusted_stake modules does not trigger:
- get_settings() calls
- Redis connections
- Chain or HTTP client creation
- Scheduler creation

If this test fails, someone introduced an import-time side effect that
needs to be moved to lazy initialization.
"""

import sys
from unittest.mock import patch

import pytest

FRESH_PREFIXES = (
    "trusted_stake.services.",
    "trusted_stake.core.redis",
    "trusted_stake.core.scheduler",
)


def _clear():
    for key in list(sys.modules):
        if key.startswith(FRESH_PREFIXES):
            del sys.modules[key]


@pytest.fixture
def fresh_imports():
    """Let a test import modules anew, then put the previously loaded modules back.

    Other test modules hold references to those, so both
    sys.modules and the parent package attributes are restored.
    """
    saved = {key: mod for key, mod in sys.modules.items() if key.startswith(FRESH_PREFIXES)}
    _clear()
    yield
    _clear()
    sys.modules.update(saved)
    for name, module in saved.items():
        parent, _, child = name.rpartition(".")
        if parent in sys.modules:
            setattr(sys.modules[parent], child, module)


class TestNoImportSideEffects:
    """Verify that importing modules does not trigger side effects."""

    def test_no_get_settings_on_import(self, fresh_imports):
        """Ensure get_settings() is not called during import."""
        call_tracker = {"called": False}

        def mock_get_settings():
            call_tracker["called"] = True
            raise RuntimeError("get_settings() was called during import!")

        with patch("trusted_stake.core.config.get_settings", mock_get_settings):
            try:
                from trusted_stake.services.chain import fixed_point, reader  # noqa: F401
                from trusted_stake.services.analysis import balances, pnl, stats  # noqa: F401
                from trusted_stake.services.data import coingecko_client, trustedstake_client  # noqa: F401
                from trusted_stake.services import network_stats, portfolio  # noqa: F401
                from trusted_stake.core import scheduler  # noqa: F401
            except RuntimeError as e:
                if "get_settings() was called during import" in str(e):
                    pytest.fail(f"Module import caused side effect: {e}")
                raise

        assert not call_tracker["called"], "get_settings was called during import"

    def test_redis_client_is_lazy(self, fresh_imports):
        from trusted_stake.core import redis

        assert redis._redis_client is None, "Redis client was created at import time"

    def test_lazy_singletons_not_instantiated_on_import(self, fresh_imports):
        import trusted_stake.core.scheduler
        import trusted_stake.services.data.trustedstake_client
        import trusted_stake.services.network_stats
        import trusted_stake.services.portfolio

        assert sys.modules["trusted_stake.services.data.trustedstake_client"]._trustedstake_client is None, (
            "TrustedStakeClient was instantiated at import time"
        )
        assert sys.modules["trusted_stake.services.portfolio"]._portfolio_service is None, (
            "PortfolioService was instantiated at import time"
        )
        assert sys.modules["trusted_stake.services.network_stats"]._network_stats_service is None, (
            "NetworkStatsService was instantiated at import time"
        )
        assert sys.modules["trusted_stake.core.scheduler"]._scheduler is None, (
            "Scheduler was created at import time"
        )
