"""
Envelope stored at every cache key.

The cached result travels inside an explicit envelope next to its staleness
flag, so staleness can be tracked for any JSON value, not only objects.
"""

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from query_memoize.shared.errors import SerializationError
from query_memoize.shared.logging import get_logger


logger = get_logger("query_cache.envelope")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEnvelope(BaseModel):
    """Cached result plus its staleness marker."""

    model_config = ConfigDict(extra="forbid")

    value: Any
    stale: bool = False
    cached_at: datetime = Field(default_factory=_utcnow)

    def mark_stale(self) -> "CacheEnvelope":
        """Copy of this envelope flagged stale, keeping ``cached_at``."""
        return self.model_copy(update={"stale": True})


ENVELOPE_FIELDS = frozenset(CacheEnvelope.model_fields)


def encode_envelope(envelope: CacheEnvelope) -> str:
    """Serialize an envelope for the store."""
    try:
        return envelope.model_dump_json()
    except (TypeError, ValueError) as e:
        raise SerializationError(
            "Result is not JSON-serializable",
            details={"value_type": type(envelope.value).__name__, "error": str(e)}
        ) from e


def encode_value(value: Any) -> str:
    """Wrap a fresh result in an envelope and serialize it."""
    return encode_envelope(CacheEnvelope(value=value))


def decode_envelope(raw: str) -> CacheEnvelope:
    """Parse a stored payload.

    Payloads that are JSON but not an envelope are treated as fresh values.
    Payloads that are not JSON at all come back as the raw string, fresh.
    """
    try:
        value = json.loads(raw)
    except ValueError as e:
        logger.warning("Error parsing cache data, returning raw value", error=str(e))
        return CacheEnvelope(value=raw)

    if isinstance(value, dict) and value.keys() == ENVELOPE_FIELDS:
        try:
            return CacheEnvelope.model_validate(value)
        except ValidationError as e:
            logger.warning("Malformed cache envelope, treating payload as value", error=str(e))

    return CacheEnvelope(value=value)
