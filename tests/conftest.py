"""
Shared fixtures for cache layer tests.
"""

import pytest

from query_memoize.caching.memoizer import Memoizer
from query_memoize.caching.store import ConnectionState, StoreAdapter
from query_memoize.shared.config import CacheConfig
from query_memoize.shared.test_helpers import FakeRedis


@pytest.fixture
def fake_redis():
    """In-memory Redis double."""
    return FakeRedis()


@pytest.fixture
def cache_config():
    """Config with a short startup grace period."""
    return CacheConfig(ttl_seconds=60, prefetch_ratio=0.7, startup_grace_seconds=0.01)


@pytest.fixture
def store(fake_redis, cache_config):
    """Store adapter already in READY state."""
    adapter = StoreAdapter(fake_redis, config=cache_config)
    adapter.state = ConnectionState.READY
    return adapter


@pytest.fixture
def memoizer(store, cache_config):
    """Memoizer bound to the live fake store."""
    return Memoizer(store, cache_config)
