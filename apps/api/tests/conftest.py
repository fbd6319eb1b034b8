"""
Pytest configuration and fixtures

Nothing here touches the network or a real Redis: the read budget is
patched per test and collaborators are built from deterministic synthetic
telemetry.
"""
import pytest
import sys
import os
from unittest.mock import MagicMock

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import StreamConfig
from core.cache import reset_redis_client
from services.stream_monitoring import OperationLog, PerformanceMonitor
from services.telemetry import Telemetry
from fixtures.stream_fixtures import make_easy_run_stream, make_small_telemetry


@pytest.fixture(autouse=True)
def _reset_redis_singleton():
    """Never leak a cached redis client between tests."""
    reset_redis_client()
    yield
    reset_redis_client()


@pytest.fixture
def stream_config():
    """Default token budget and page limits."""
    return StreamConfig()


@pytest.fixture
def small_telemetry():
    return make_small_telemetry()


@pytest.fixture
def easy_run_telemetry():
    """60-minute run; well above the default context budget."""
    return Telemetry.from_dict(make_easy_run_stream())


@pytest.fixture
def monitor():
    with PerformanceMonitor() as m:
        yield m


@pytest.fixture
def operation_log():
    with OperationLog(log_dir="", max_entries=1000) as log:
        yield log


@pytest.fixture
def fake_redis():
    """MagicMock standing in for redis.Redis with an in-memory counter."""
    store = {}
    client = MagicMock()

    def _eval(script, numkeys, key, limit, ttl):
        current = int(store.get(key, 0))
        if current >= int(limit):
            return 0
        store[key] = current + 1
        return 1

    client.eval.side_effect = _eval
    client.get.side_effect = lambda key: store.get(key)
    client.store = store
    return client
