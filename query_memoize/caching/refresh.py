"""
Staleness timers for cached entries.

Each written key gets one timer that fires at ``ttl * prefetch_ratio`` and
flips the stored envelope to stale. The next read of a stale entry serves it
and refreshes it in the background, so refreshes land before hard expiry.
"""

import asyncio
from typing import Dict, Optional

from query_memoize.caching.background import BackgroundTasks
from query_memoize.caching.envelope import decode_envelope, encode_envelope
from query_memoize.caching.store import StoreAdapter
from query_memoize.shared.config import DEFAULT_PREFETCH_RATIO
from query_memoize.shared.errors import ConfigurationError
from query_memoize.shared.logging import get_logger


class RefreshScheduler:
    """Owns the per-key staleness timers."""

    def __init__(
        self,
        prefetch_ratio: float = DEFAULT_PREFETCH_RATIO,
        tasks: Optional[BackgroundTasks] = None,
        *,
        muted: bool = False,
    ):
        if not 0 < prefetch_ratio < 1:
            raise ConfigurationError(
                f"prefetch_ratio must be between 0 and 1, {prefetch_ratio!r} is not valid",
                details={"prefetch_ratio": prefetch_ratio}
            )
        self.prefetch_ratio = prefetch_ratio
        self.logger = get_logger("query_cache.refresh", muted=muted)
        self.tasks = tasks or BackgroundTasks(self.logger)
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def delay_for(self, ttl_seconds: float) -> float:
        """Seconds until an entry with this TTL turns stale."""
        return ttl_seconds * self.prefetch_ratio

    def arm(self, key: str, ttl_seconds: float, store: StoreAdapter) -> asyncio.TimerHandle:
        """Schedule ``key`` to be marked stale, replacing any pending timer."""
        self.cancel(key)
        delay = self.delay_for(ttl_seconds)
        handle = asyncio.get_running_loop().call_later(delay, self._fire, key, store)
        self._timers[key] = handle
        self.logger.debug("Armed refresh timer", key=key, delay=delay)
        return handle

    def cancel(self, key: str) -> bool:
        """Cancel the pending timer for ``key``, if any."""
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer."""
        count = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        return count

    def is_armed(self, key: str) -> bool:
        return key in self._timers

    def _fire(self, key: str, store: StoreAdapter):
        self._timers.pop(key, None)
        self.tasks.spawn(self.mark_stale(key, store), name=f"mark-stale:{key}", key=key)

    async def mark_stale(self, key: str, store: StoreAdapter) -> bool:
        """Flag the stored entry stale without touching its expiry.

        Returns False when the entry is already gone.
        """
        raw = await store.get(key)
        if raw is None:
            return False
        envelope = decode_envelope(raw).mark_stale()
        if not await store.set_preserving_ttl(key, encode_envelope(envelope)):
            return False
        self.logger.debug("Marked cache entry stale", key=key)
        return True

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, key: str) -> bool:
        return key in self._timers
