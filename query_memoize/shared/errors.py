"""
Shared error handling for the query memoization layer.
"""

from typing import Dict, Any, Optional


class QueryCacheException(Exception):
    """Base exception for the cache layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(QueryCacheException):
    """Invalid setup: bad operation, TTL, store handle or duplicate name."""

    def __init__(self, message: str = "Invalid cache configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class StoreError(QueryCacheException):
    """A store round-trip failed."""

    def __init__(self, operation: str, message: str = "Store operation failed", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("operation", operation)
        super().__init__("STORE_ERROR", f"{operation}: {message}", details)
        self.operation = operation


class KeyDerivationError(QueryCacheException):
    """Arguments could not be canonicalized into a cache key."""

    def __init__(self, message: str = "Cannot derive cache key", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_DERIVATION_ERROR", message, details)


class SerializationError(QueryCacheException):
    """A result could not be serialized for storage."""

    def __init__(self, message: str = "Cannot serialize cache value", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)
