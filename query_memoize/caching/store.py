"""
Redis store adapter for the memoization layer.
"""

import asyncio
import math
from enum import Enum
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from query_memoize.shared.config import CacheConfig
from query_memoize.shared.errors import ConfigurationError, StoreError
from query_memoize.shared.logging import get_logger


class ConnectionState(Enum):
    """Store connection states."""
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


_REQUIRED_COMMANDS = ("get", "set", "ttl", "pttl", "delete", "scan_iter", "ping")


class StoreAdapter:
    """Thin async contract over a Redis client.

    Every operation short-circuits to a no-op when the adapter is not live.
    Redis failures surface as ``StoreError``; connection failures also flip
    the adapter out of READY until the health loop sees a good ping.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        config: Optional[CacheConfig] = None,
        redis_url: Optional[str] = None,
    ):
        self.config = config or CacheConfig()
        self.redis_url = redis_url or self.config.redis_url
        self.logger = get_logger("query_cache.store", muted=self.config.logs_disabled)

        if client is not None:
            missing = [name for name in _REQUIRED_COMMANDS if not hasattr(client, name)]
            if missing:
                raise ConfigurationError(
                    "Invalid store client provided",
                    details={"missing_commands": missing}
                )
        self.redis = client
        self.state = ConnectionState.CONNECTING
        self._health_task: Optional[asyncio.Task] = None

    async def start(self):
        """Connect, probe the connection and start the health loop."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.config.socket_timeout,
                socket_timeout=self.config.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=int(self.config.health_check_interval)
            )

        try:
            await self.redis.ping()
            self.state = ConnectionState.READY
            self.logger.info("Redis store ready", redis_url=self.redis_url)
        except Exception as e:
            self.state = ConnectionState.FAILED
            self.logger.error("Failed to connect Redis store", redis_url=self.redis_url, error=str(e))

        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self):
        """Stop the health loop and close the client."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        if self.redis is not None and self.state != ConnectionState.CLOSED:
            await self.redis.aclose()
        self.state = ConnectionState.CLOSED
        self.logger.info("Redis store stopped")

    async def _health_loop(self):
        """Ping periodically and track readiness."""
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            await self.health_check()

    async def health_check(self) -> bool:
        """Ping once and update the connection state."""
        if self.redis is None or self.state == ConnectionState.CLOSED:
            return False
        try:
            await self.redis.ping()
        except Exception as e:
            if self.state == ConnectionState.READY:
                self.logger.warning("Redis store unreachable", error=str(e))
            if self.state != ConnectionState.FAILED:
                self.state = ConnectionState.RECONNECTING
            return False

        if self.state != ConnectionState.READY:
            self.logger.info("Redis store ready", previous_state=self.state.value)
        self.state = ConnectionState.READY
        return True

    def is_live(self) -> bool:
        """True only while the connection is READY."""
        return self.redis is not None and self.state == ConnectionState.READY

    def _failure(self, operation: str, key: str, error: Exception) -> StoreError:
        if isinstance(error, (RedisConnectionError, RedisTimeoutError)):
            self.state = ConnectionState.RECONNECTING
        return StoreError(operation, str(error), details={"key": key})

    async def get(self, key: str) -> Optional[str]:
        """Get the raw value stored at ``key``."""
        if not self.is_live():
            return None
        try:
            return await self.redis.get(key)
        except RedisError as e:
            raise self._failure("get", key, e) from e

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Write ``value`` with an expiry; fractional TTLs use millisecond precision."""
        if not self.is_live():
            return False
        try:
            if float(ttl_seconds).is_integer():
                await self.redis.set(key, value, ex=int(ttl_seconds))
            else:
                await self.redis.set(key, value, px=math.ceil(ttl_seconds * 1000))
            return True
        except RedisError as e:
            raise self._failure("set", key, e) from e

    async def get_remaining_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; zero or negative when absent or without expiry."""
        if not self.is_live():
            return 0
        try:
            return int(await self.redis.ttl(key))
        except RedisError as e:
            raise self._failure("ttl", key, e) from e

    async def set_preserving_ttl(self, key: str, value: str) -> bool:
        """Rewrite ``value`` in place, keeping the key's current expiry.

        Issued as a single ``SET ... XX KEEPTTL`` so the expiry is never
        re-derived from a rounded TTL and a key deleted meanwhile is not
        written back. Returns False when the key no longer exists. A key
        without expiry keeps none, and a warning is logged.
        """
        if not self.is_live():
            return False
        try:
            if await self.redis.pttl(key) == -1:
                self.logger.warning("Saved item to cache with no TTL", key=key)
            return bool(await self.redis.set(key, value, xx=True, keepttl=True))
        except RedisError as e:
            raise self._failure("set", key, e) from e

    async def delete(self, key: str) -> bool:
        """Delete ``key``."""
        if not self.is_live():
            return False
        try:
            await self.redis.delete(key)
            return True
        except RedisError as e:
            raise self._failure("delete", key, e) from e

    async def scan_keys(self, pattern: str) -> List[str]:
        """List keys matching a glob pattern.

        Walks the whole keyspace; reserved for administrative invalidation.
        """
        if not self.is_live():
            return []
        try:
            return [key async for key in self.redis.scan_iter(match=pattern, count=self.config.scan_count)]
        except RedisError as e:
            raise self._failure("scan", pattern, e) from e
