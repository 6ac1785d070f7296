"""
Memoization engine.

Wraps coroutine functions so their results are cached in Redis, served stale
while a background refresh runs, and bypassed whenever the store is not
usable. The cache never becomes a new failure mode for the caller: the only
exceptions a memoized call raises are the wrapped function's own.
"""

import asyncio
import functools
import inspect
import math
import numbers
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from query_memoize.caching.background import BackgroundTasks
from query_memoize.caching.envelope import decode_envelope, encode_value
from query_memoize.caching.invalidation import CacheInvalidator
from query_memoize.caching.keys import derive_key, operation_glob
from query_memoize.caching.refresh import RefreshScheduler
from query_memoize.caching.store import ConnectionState, StoreAdapter
from query_memoize.shared.config import CacheConfig, get_config
from query_memoize.shared.errors import ConfigurationError, KeyDerivationError
from query_memoize.shared.logging import get_logger
from query_memoize.shared.metrics import CacheMetrics


AsyncOperation = Callable[..., Awaitable[Any]]
ErrorTranslator = Callable[[Exception], BaseException]


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@dataclass
class MemoizedOperation:
    """Registration of one memoized coroutine function."""
    name: str
    func: AsyncOperation
    store: StoreAdapter
    ttl_seconds: float
    wrapper: Optional[Callable[..., Awaitable[Any]]] = field(default=None, repr=False)


class Memoizer:
    """Cache manager owning registrations, staleness timers and background work."""

    def __init__(
        self,
        store: Optional[StoreAdapter] = None,
        config: Optional[CacheConfig] = None,
        *,
        metrics: Optional[CacheMetrics] = None,
        error_translator: Optional[ErrorTranslator] = None,
    ):
        if store is not None and not isinstance(store, StoreAdapter):
            raise ConfigurationError(
                "Invalid store provided to Memoizer",
                details={"store_type": type(store).__name__}
            )
        self.config = config or CacheConfig()
        self.store = store
        self.metrics = metrics
        self.error_translator = error_translator
        self.logger = get_logger("query_cache.memoizer", muted=self.config.logs_disabled)

        self.tasks = BackgroundTasks(self.logger)
        self.scheduler = RefreshScheduler(
            self.config.prefetch_ratio,
            self.tasks,
            muted=self.config.logs_disabled
        )
        self.invalidator = CacheInvalidator(self)

        self._registrations: Dict[str, MemoizedOperation] = {}
        self._refreshing: Set[str] = set()
        self._startup_reports: Dict[str, asyncio.TimerHandle] = {}
        self._unstarted_warned: Set[str] = set()
        self._owned_stores: List[StoreAdapter] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False

        self.logger.info(
            "Redis memoization initialized",
            store_configured=store is not None,
            ttl_seconds=self.config.ttl_seconds,
            prefetch_ratio=self.config.prefetch_ratio
        )

    @classmethod
    def from_config(cls, config: Optional[CacheConfig] = None, **kwargs: Any) -> "Memoizer":
        """Build a Memoizer with a StoreAdapter for ``config.redis_url``."""
        config = config or get_config()
        return cls(StoreAdapter(config=config), config, **kwargs)

    # Lifecycle

    async def start(self):
        """Connect unstarted stores and schedule the startup reports."""
        if self._started:
            return
        self._loop = asyncio.get_running_loop()

        for store in self._stores():
            if store.state == ConnectionState.CONNECTING:
                await store.start()
                self._owned_stores.append(store)

        self._started = True
        for registration in self._registrations.values():
            self._schedule_startup_report(registration, self._loop)

        self.logger.info("Memoizer started", operations=len(self._registrations))

    async def stop(self):
        """Finish background work, drop timers and close stores opened by start().

        Background tasks still running after ``shutdown_timeout_seconds`` are
        cancelled.
        """
        for handle in self._startup_reports.values():
            handle.cancel()
        self._startup_reports.clear()

        if not await self.tasks.drain(self.config.shutdown_timeout_seconds):
            self.logger.warning("Cancelling unfinished background tasks", pending=len(self.tasks))
            await self.tasks.cancel_all()
        cancelled = self.scheduler.cancel_all()

        for store in self._owned_stores:
            await store.stop()
        self._owned_stores.clear()

        self._started = False
        self.logger.info("Memoizer stopped", cancelled_timers=cancelled)

    async def drain(self):
        """Wait for pending cache writes, refreshes and stale marks."""
        await self.tasks.drain()

    async def __aenter__(self) -> "Memoizer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def _stores(self) -> List[StoreAdapter]:
        stores: List[StoreAdapter] = []
        candidates = [self.store] + [registration.store for registration in self._registrations.values()]
        for store in candidates:
            if store is not None and all(store is not seen for seen in stores):
                stores.append(store)
        return stores

    def is_live(self) -> bool:
        """Whether the default store is live."""
        return self.store is not None and self.store.is_live()

    # Registration

    @property
    def registrations(self) -> Mapping[str, MemoizedOperation]:
        return MappingProxyType(self._registrations)

    def get_registration(self, name: str) -> Optional[MemoizedOperation]:
        return self._registrations.get(name)

    def memoize(
        self,
        func: Optional[AsyncOperation] = None,
        *,
        store: Optional[StoreAdapter] = None,
        ttl_seconds: Optional[float] = None,
        name: Optional[str] = None,
    ):
        """Wrap a coroutine function with the cache.

        Usable directly, ``memoizer.memoize(fetch_user)``, or as a decorator,
        ``@memoizer.memoize(ttl_seconds=60)``. The wrapper exposes
        ``invalidate(locator=None)`` and ``operation_name``.

        Without any store configured the function is returned unchanged.

        Raises:
            ConfigurationError: ``func`` is not a named coroutine function,
                the TTL is not a positive number, the store is not a
                StoreAdapter, or the name is already registered.
        """
        if func is None:
            return lambda target: self.memoize(target, store=store, ttl_seconds=ttl_seconds, name=name)

        ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        operation_name = self._verify_can_memoize(func, ttl, name)

        if store is not None and not isinstance(store, StoreAdapter):
            raise ConfigurationError(
                f"Invalid store provided for {operation_name}",
                details={"store_type": type(store).__name__}
            )
        store = store or self.store
        if store is None:
            self.logger.warning(
                "No store provided, memoization disabled",
                operation=operation_name
            )
            return func

        if operation_name in self._registrations:
            raise ConfigurationError(
                f"Cannot memoize two functions with the same name ({operation_name})",
                details={"operation": operation_name}
            )

        registration = MemoizedOperation(
            name=operation_name,
            func=func,
            store=store,
            ttl_seconds=ttl
        )

        @functools.wraps(func)
        async def memoized(*args: Any, **kwargs: Any) -> Any:
            return await self._call(registration, args, kwargs)

        async def invalidate(locator: Optional[str] = None) -> int:
            return await self.invalidate_operation(registration, locator)

        memoized.invalidate = invalidate
        memoized.operation_name = operation_name
        registration.wrapper = memoized
        self._registrations[operation_name] = registration

        loop = self._loop if self._started else _running_loop()
        if loop is not None:
            self._schedule_startup_report(registration, loop)

        self.logger.debug("Registered memoized operation", operation=operation_name, ttl_seconds=ttl)
        return memoized

    def _verify_can_memoize(self, func: Any, ttl: Any, name: Optional[str]) -> str:
        if not callable(func):
            raise ConfigurationError(f"Can only memoize functions, not {type(func).__name__}")
        if not inspect.iscoroutinefunction(func):
            raise ConfigurationError(
                "Can only memoize coroutine functions",
                details={"function": repr(func)}
            )

        operation_name = name or getattr(func, "__name__", None)
        if not operation_name or operation_name == "<lambda>":
            raise ConfigurationError("Cannot memoize anonymous functions")

        valid_ttl = (
            isinstance(ttl, numbers.Real)
            and not isinstance(ttl, bool)
            and math.isfinite(ttl)
            and ttl > 0
        )
        if not valid_ttl:
            raise ConfigurationError(
                f"ttl for {operation_name} must be a number greater than 0, "
                f"{type(ttl).__name__} {ttl!r} is not valid",
                details={"operation": operation_name}
            )
        return operation_name

    def _schedule_startup_report(self, registration: MemoizedOperation, loop: asyncio.AbstractEventLoop):
        previous = self._startup_reports.pop(registration.name, None)
        if previous is not None:
            previous.cancel()
        self._startup_reports[registration.name] = loop.call_later(
            self.config.startup_grace_seconds,
            self._report_startup,
            registration
        )

    def _report_startup(self, registration: MemoizedOperation):
        self._startup_reports.pop(registration.name, None)
        if registration.store.is_live():
            self.logger.info(
                "Memoized operation",
                operation=registration.name,
                ttl_seconds=registration.ttl_seconds
            )
        else:
            # Not live after the grace period: probably misconfigured, maybe still connecting.
            self.logger.warning(
                "Memoization probably failed, store not live after startup",
                operation=registration.name,
                grace_seconds=self.config.startup_grace_seconds
            )

    # Call path

    async def _call(self, registration: MemoizedOperation, args: Sequence[Any], kwargs: Dict[str, Any]) -> Any:
        func = registration.func
        try:
            key = derive_key(registration.name, args, kwargs)
        except KeyDerivationError as e:
            self.logger.warning(
                "Bypassing cache, arguments cannot be keyed",
                operation=registration.name,
                error=str(e)
            )
            self._count(registration, "bypass")
            return await func(*args, **kwargs)

        store = registration.store
        if not store.is_live():
            if store.state == ConnectionState.CONNECTING and registration.name not in self._unstarted_warned:
                # start() never ran for this store: every call will bypass.
                self._unstarted_warned.add(registration.name)
                self.logger.warning("Store never started, bypassing cache", operation=registration.name)
            else:
                self.logger.debug("Bypassing cache", operation=registration.name)
            self._count(registration, "bypass")
            return await func(*args, **kwargs)

        try:
            raw = await store.get(key)
        except Exception as e:
            self.logger.error("Cache failure, bypassing", operation=registration.name, key=key, error=str(e))
            self._count(registration, "error")
            return await func(*args, **kwargs)

        if raw is None:
            self._count(registration, "miss")
            return await self._populate(registration, key, args, kwargs)

        envelope = decode_envelope(raw)
        if envelope.stale:
            self._count(registration, "stale")
            self._schedule_refresh(registration, key, args, kwargs)
        else:
            self._count(registration, "hit")
        return envelope.value

    async def _populate(self, registration: MemoizedOperation, key: str, args: Sequence[Any], kwargs: Dict[str, Any]) -> Any:
        try:
            result = await registration.func(*args, **kwargs)
        except Exception as error:
            # Never leave an earlier value behind a failing call.
            await self._discard(registration, key)
            translated = self._translate(error)
            if translated is error:
                raise
            raise translated from error

        self.tasks.spawn(
            self._write(registration, key, result),
            name=f"cache-write:{key}",
            operation=registration.name,
            key=key
        )
        return result

    def _translate(self, error: Exception) -> BaseException:
        if self.error_translator is None:
            return error
        return self.error_translator(error)

    async def _write(self, registration: MemoizedOperation, key: str, value: Any):
        payload = encode_value(value)
        written = await registration.store.set_with_expiry(key, payload, registration.ttl_seconds)
        if written:
            self.scheduler.arm(key, registration.ttl_seconds, registration.store)
            self.logger.debug("Cached result", operation=registration.name, key=key, ttl=registration.ttl_seconds)

    def _schedule_refresh(self, registration: MemoizedOperation, key: str, args: Sequence[Any], kwargs: Dict[str, Any]):
        if key in self._refreshing:
            self.logger.debug("Refresh already in flight", operation=registration.name, key=key)
            return
        self._refreshing.add(key)
        self.tasks.spawn(
            self._refresh(registration, key, args, kwargs),
            name=f"cache-refresh:{key}",
            operation=registration.name,
            key=key
        )

    async def _refresh(self, registration: MemoizedOperation, key: str, args: Sequence[Any], kwargs: Dict[str, Any]):
        try:
            result = await registration.func(*args, **kwargs)
            await self._write(registration, key, result)
        except Exception:
            self._count_refresh(registration, "failure")
            raise
        else:
            self._count_refresh(registration, "success")
        finally:
            self._refreshing.discard(key)

    async def _delete(self, registration: MemoizedOperation, key: str) -> bool:
        self.scheduler.cancel(key)
        return await registration.store.delete(key)

    async def _discard(self, registration: MemoizedOperation, key: str):
        try:
            await self._delete(registration, key)
        except Exception as e:
            self.logger.error("Failed to delete cache key", operation=registration.name, key=key, error=str(e))

    # Invalidation

    async def invalidate_operation(self, registration: MemoizedOperation, locator: Optional[str] = None) -> int:
        """Delete an operation's keys, optionally only those containing ``locator``."""
        if not registration.store.is_live():
            self.logger.debug("Store not live, nothing to invalidate", operation=registration.name)
            return 0

        pattern = operation_glob(registration.name, locator)
        deleted = 0
        try:
            for key in await registration.store.scan_keys(pattern):
                await self._delete(registration, key)
                deleted += 1
        except Exception as e:
            self.logger.error(
                "Error invalidating cache",
                operation=registration.name,
                locator=locator,
                deleted=deleted,
                error=str(e)
            )

        if deleted:
            self.logger.info("Invalidated cache", operation=registration.name, locator=locator, count=deleted)
            if self.metrics is not None:
                self.metrics.increment_counter(
                    "query_cache_invalidations_total",
                    amount=deleted,
                    operation=registration.name
                )
        return deleted

    async def invalidate_all(
        self,
        operation_names: Optional[Union[str, Iterable[str]]] = None,
        locators: Optional[Union[str, Iterable[Optional[str]]]] = None,
    ) -> int:
        """Invalidate several operations at once; see ``CacheInvalidator``."""
        return await self.invalidator.invalidate_all(operation_names, locators)

    # Metrics

    def _count(self, registration: MemoizedOperation, result: str):
        if self.metrics is not None:
            self.metrics.increment_counter(
                "query_cache_requests_total",
                operation=registration.name,
                result=result
            )

    def _count_refresh(self, registration: MemoizedOperation, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter(
                "query_cache_refresh_total",
                operation=registration.name,
                outcome=outcome
            )
