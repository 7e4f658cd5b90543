import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0


@pytest.fixture(autouse=True)
def reset_pi_circuit():
    from apps.settlement.http_adapters import _pi_cb
    _pi_cb.reset()
    yield
    _pi_cb.reset()


@pytest.fixture(autouse=True)
def clear_throttle_cache():
    from django.core.cache import cache
    cache.clear()
