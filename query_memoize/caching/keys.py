"""
Cache key derivation for memoized operations.

Keys have the form ``<operation_name>:<canonical arguments>``. The canonical
form is part of the persisted format: changing it silently orphans every key
already in the store until those keys expire.

Arguments are normalized to JSON before being dumped with sorted keys. Types
JSON cannot tell apart from a list or a string (tuples, sets, dates,
decimals, UUIDs, enums, pydantic models) are wrapped in an object tagged
with ``TYPE_TAG``; mappings may only have string keys and may not use the
tag themselves, so two distinct calls never share a key.
"""

import datetime
import decimal
import enum
import json
import uuid
from collections.abc import Mapping as MappingABC
from typing import Any, Mapping, Optional, Sequence, Set

from pydantic import BaseModel

from query_memoize.shared.errors import KeyDerivationError


KEY_SEPARATOR = ":"
TYPE_TAG = "__type__"
_GLOB_SPECIAL = "\\*?[]"


def _tagged(type_name: str, value: Any) -> dict:
    return {TYPE_TAG: type_name, "value": value}


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _normalize(value: Any, active: Set[int]) -> Any:
    """Convert ``value`` into plain JSON data, tagging ambiguous types."""
    # Enum first: str and int enums would otherwise pass as their value.
    if isinstance(value, enum.Enum):
        return _tagged(f"enum:{type(value).__name__}", _normalize(value.value, active))
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime.datetime):
        return _tagged("datetime", value.isoformat())
    if isinstance(value, datetime.date):
        return _tagged("date", value.isoformat())
    if isinstance(value, datetime.time):
        return _tagged("time", value.isoformat())
    if isinstance(value, decimal.Decimal):
        return _tagged("decimal", str(value))
    if isinstance(value, uuid.UUID):
        return _tagged("uuid", str(value))
    if isinstance(value, BaseModel):
        return _tagged(f"model:{type(value).__name__}", value.model_dump(mode="json"))

    marker = id(value)
    if marker in active:
        raise ValueError("Circular reference detected")
    active.add(marker)
    try:
        if isinstance(value, MappingABC):
            normalized = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    raise TypeError(f"Mapping keys must be strings, got {type(key).__name__}")
                if key == TYPE_TAG:
                    raise TypeError(f"Mapping key {TYPE_TAG!r} is reserved")
                normalized[key] = _normalize(item, active)
            return normalized
        if isinstance(value, list):
            return [_normalize(item, active) for item in value]
        if isinstance(value, tuple):
            return _tagged("tuple", [_normalize(item, active) for item in value])
        if isinstance(value, (set, frozenset)):
            items = [_normalize(item, active) for item in value]
            return _tagged("set", sorted(items, key=_dumps))
    finally:
        active.discard(marker)

    raise TypeError(f"Object of type {type(value).__name__} has no canonical form")


def canonicalize_arguments(args: Sequence[Any], kwargs: Optional[Mapping[str, Any]] = None) -> str:
    """Serialize call arguments deterministically.

    Mapping keys are sorted at every depth, so neither dict insertion order
    nor keyword-argument order affects the result.

    Raises:
        KeyDerivationError: arguments are cyclic, too deep, use non-string
            mapping keys, or contain a type with no canonical form.
    """
    try:
        return _dumps([[_normalize(arg, set()) for arg in args], _normalize(dict(kwargs or {}), set())])
    except (TypeError, ValueError, RecursionError) as e:
        raise KeyDerivationError(
            "Arguments cannot be canonicalized",
            details={"error": str(e)}
        ) from e


def derive_key(operation_name: str, args: Sequence[Any], kwargs: Optional[Mapping[str, Any]] = None) -> str:
    """Derive the cache key for one invocation of a memoized operation."""
    return f"{operation_name}{KEY_SEPARATOR}{canonicalize_arguments(args, kwargs)}"


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so ``text`` matches literally."""
    return "".join(f"\\{char}" if char in _GLOB_SPECIAL else char for char in text)


def operation_glob(operation_name: str, locator: Optional[str] = None) -> str:
    """Pattern matching every key of an operation, optionally containing ``locator``."""
    pattern = f"{escape_glob(operation_name)}{KEY_SEPARATOR}*"
    if locator:
        pattern += f"{escape_glob(locator)}*"
    return pattern
