"""
Unit tests for cache key derivation.
"""

import datetime
import uuid
from decimal import Decimal
from enum import Enum

import pytest
from pydantic import BaseModel

from query_memoize.caching.keys import canonicalize_arguments, derive_key, escape_glob, operation_glob
from query_memoize.shared.errors import KeyDerivationError


class Region(Enum):
    EU = "eu"


class Filters(BaseModel):
    status: str
    limit: int


class TestDeriveKey:
    """Test cases for derive_key."""

    def test_key_format(self):
        """Key is the operation name, a colon and the canonical arguments."""
        assert derive_key("get_user", (42,)) == 'get_user:[[42],{}]'

    def test_dict_key_order_does_not_matter(self):
        """Semantically identical dicts produce one key."""
        first = derive_key("search", ({"a": 1, "b": {"x": 1, "y": 2}},))
        second = derive_key("search", ({"b": {"y": 2, "x": 1}, "a": 1},))

        assert first == second

    def test_keyword_order_does_not_matter(self):
        """Keyword arguments are sorted."""
        assert derive_key("search", (), {"limit": 10, "offset": 5}) == derive_key(
            "search", (), {"offset": 5, "limit": 10}
        )

    def test_positional_order_matters(self):
        """Argument order is significant."""
        assert derive_key("op", (1, 2)) != derive_key("op", (2, 1))

    def test_operation_name_namespaces_key(self):
        """Different operations never share keys."""
        assert derive_key("get_user", (1,)) != derive_key("get_team", (1,))

    @pytest.mark.parametrize("first,second", [
        ((1, 2), [1, 2]),
        ({1, 2}, [1, 2]),
        (datetime.date(2024, 1, 2), "2024-01-02"),
        (Decimal("1.50"), "1.50"),
        (Region.EU, "eu"),
        (Filters(status="open", limit=5), {"limit": 5, "status": "open"}),
        (True, 1),
        (1.0, 1),
    ])
    def test_distinct_types_get_distinct_keys(self, first, second):
        """Values that look alike in JSON still produce different keys."""
        assert derive_key("op", (first,)) != derive_key("op", (second,))

    def test_supported_non_json_types(self):
        """Dates, decimals, UUIDs, sets, enums and pydantic models are normalized."""
        ident = uuid.UUID("12345678-1234-5678-1234-567812345678")
        args = (
            datetime.date(2024, 1, 2),
            Decimal("1.50"),
            ident,
            {3, 1, 2},
            Region.EU,
            Filters(status="open", limit=5),
        )

        key = derive_key("op", args)

        assert key == derive_key("op", args)
        assert '"2024-01-02"' in key
        assert '"1.50"' in key
        assert str(ident) in key
        assert '"value":[1,2,3]' in key
        assert '"eu"' in key
        assert '{"limit":5,"status":"open"}' in key

    def test_set_order_does_not_matter(self):
        assert derive_key("op", ({"b", "a", "c"},)) == derive_key("op", ({"c", "a", "b"},))

    @pytest.mark.parametrize("mapping", [
        {1: "a"},
        {None: "a"},
        {"outer": {2.5: "a"}},
        {"__type__": "tuple", "value": [1, 2]},
    ])
    def test_ambiguous_mapping_keys_raise_key_derivation_error(self, mapping):
        """Non-string keys would collide with their string form once dumped."""
        with pytest.raises(KeyDerivationError):
            derive_key("op", (mapping,))

    def test_integer_and_string_mapping_keys_never_share_a_key(self):
        with pytest.raises(KeyDerivationError):
            derive_key("op", ({1: "a"},))
        assert derive_key("op", ({"1": "a"},)) == 'op:[[{"1":"a"}],{}]'

    def test_shared_reference_is_not_a_cycle(self):
        """The same object appearing twice is fine; only true cycles fail."""
        shared = [1, 2]

        assert derive_key("op", (shared, shared)) == 'op:[[[1,2],[1,2]],{}]'

    def test_cyclic_arguments_raise_key_derivation_error(self):
        """Cycles fail closed instead of crashing."""
        payload = {}
        payload["self"] = payload

        with pytest.raises(KeyDerivationError) as exc_info:
            derive_key("op", (payload,))

        assert exc_info.value.code == "KEY_DERIVATION_ERROR"

    def test_unsupported_type_raises_key_derivation_error(self):
        """Objects without a canonical form are rejected."""
        with pytest.raises(KeyDerivationError):
            canonicalize_arguments((object(),))


class TestOperationGlob:
    """Test cases for invalidation patterns."""

    def test_all_keys_pattern(self):
        assert operation_glob("get_user") == "get_user:*"

    def test_locator_pattern(self):
        assert operation_glob("get_user", "user123") == "get_user:*user123*"

    def test_empty_locator_is_unfiltered(self):
        assert operation_glob("get_user", "") == "get_user:*"

    def test_glob_metacharacters_are_escaped(self):
        assert escape_glob("a*b?[c]") == "a\\*b\\?\\[c\\]"
        assert operation_glob("op", "x*") == "op:*x\\**"
