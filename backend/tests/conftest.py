import pytest

from app.core.config import get_settings
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import rate_limiter


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with a different JWT secret) across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_in_memory_counters():
    rate_limiter.reset()
    alert_tracker.reset()
    yield
    rate_limiter.reset()
    alert_tracker.reset()
