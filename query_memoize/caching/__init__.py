"""
Memoization caching package.

Caches coroutine results in Redis under deterministic keys, marks entries
stale ahead of expiry and refreshes them in the background. Prefer
idempotent, read-only operations and explicit invalidation.
"""

from .envelope import CacheEnvelope
from .invalidation import CacheInvalidator
from .keys import derive_key, operation_glob
from .memoizer import MemoizedOperation, Memoizer
from .refresh import RefreshScheduler
from .store import ConnectionState, StoreAdapter

__all__ = [
    "CacheEnvelope",
    "CacheInvalidator",
    "ConnectionState",
    "MemoizedOperation",
    "Memoizer",
    "RefreshScheduler",
    "StoreAdapter",
    "derive_key",
    "operation_glob",
]
