"""
Batch invalidation across memoized operations.
"""

from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from query_memoize.shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from query_memoize.caching.memoizer import Memoizer, MemoizedOperation


class CacheInvalidator:
    """Clears cached results for several operations and locators.

    Intended for administrative triggers (deploys, data migrations, admin
    endpoints). Uses key scans, so keep it off the request path.
    """

    def __init__(self, memoizer: "Memoizer"):
        self.memoizer = memoizer
        self.logger = get_logger("query_cache.invalidation", muted=memoizer.config.logs_disabled)

    def _resolve(self, operation_names: Optional[Iterable[str]]) -> List["MemoizedOperation"]:
        registrations = self.memoizer.registrations
        if operation_names is None:
            return list(registrations.values())

        resolved = []
        for name in operation_names:
            registration = registrations.get(name)
            if registration is None or registration.wrapper is None:
                self.logger.error("Cannot clear cache for unknown operation", operation=name)
                continue
            resolved.append(registration)
        return resolved

    async def invalidate_all(
        self,
        operation_names: Optional[Union[str, Iterable[str]]] = None,
        locators: Optional[Union[str, Iterable[Optional[str]]]] = None,
    ) -> int:
        """Delete cached results.

        Args:
            operation_names: Operations to clear; all registered ones by default.
            locators: Substrings keys must contain; one unfiltered pass by default.

        Returns:
            Number of keys deleted.
        """
        if self.memoizer.store is not None and not self.memoizer.store.is_live():
            # Cache is down, nothing to clear.
            return 0

        if isinstance(operation_names, str):
            operation_names = [operation_names]
        if locators is None:
            locators = [None]
        elif isinstance(locators, str):
            locators = [locators]
        locators = list(locators)

        total = 0
        for registration in self._resolve(operation_names):
            for locator in locators:
                total += await registration.wrapper.invalidate(locator)

        self.logger.info("Cache invalidation finished", keys_deleted=total)
        return total
