"""
Transparent Redis memoization for async queries.

    memoizer = Memoizer.from_config()
    get_user = memoizer.memoize(get_user, ttl_seconds=120)
    async with memoizer:
        user = await get_user(42)
        await get_user.invalidate("42")
"""

from .caching import (
    CacheEnvelope,
    CacheInvalidator,
    ConnectionState,
    MemoizedOperation,
    Memoizer,
    RefreshScheduler,
    StoreAdapter,
    derive_key,
)
from .shared.config import CacheConfig, get_config
from .shared.errors import (
    ConfigurationError,
    KeyDerivationError,
    QueryCacheException,
    SerializationError,
    StoreError,
)

__version__ = "1.0.0"

__all__ = [
    "CacheConfig",
    "CacheEnvelope",
    "CacheInvalidator",
    "ConfigurationError",
    "ConnectionState",
    "KeyDerivationError",
    "MemoizedOperation",
    "Memoizer",
    "QueryCacheException",
    "RefreshScheduler",
    "SerializationError",
    "StoreAdapter",
    "StoreError",
    "derive_key",
    "get_config",
]
