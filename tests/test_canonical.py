"""Tests for canonical JSON serialization and hashing."""

from decimal import Decimal

import pytest

from covenant.canonical import (
    MAX_SAFE_INTEGER,
    canonical_hash,
    canonicalize,
    canonicalize_for_hash,
    keccak_hex,
)
from covenant.errors import CanonicalizationError


def test_key_order_does_not_change_output():
    a = {"b": 1, "a": {"y": [3, 2, 1], "x": "z"}}
    b = {"a": {"x": "z", "y": [3, 2, 1]}, "b": 1}

    assert canonicalize(a) == canonicalize(b) == '{"a":{"x":"z","y":[3,2,1]},"b":1}'


def test_unicode_is_kept_verbatim():
    assert canonicalize({"intent": "échange €"}) == '{"intent":"échange €"}'


def test_signatures_are_excluded_from_hash():
    doc = {"mandateId": "m-1", "core": {}}
    signed = {**doc, "signatures": {"serverSig": {"alg": "eip191"}}}

    assert canonicalize_for_hash(signed) == canonicalize(doc)
    assert canonical_hash(signed) == canonical_hash(doc)


def test_hash_is_keccak_of_canonical_utf8():
    doc = {"b": "β", "a": 1}
    digest = canonical_hash(doc)

    assert digest == keccak_hex(canonicalize(doc).encode("utf-8"))
    assert digest.startswith("0x") and len(digest) == 66


def test_any_field_change_changes_hash():
    doc = {"intent": "swap", "deadline": "2030-01-01T00:00:00.000Z"}

    assert canonical_hash(doc) != canonical_hash({**doc, "intent": "swap!"})


@pytest.mark.parametrize(
    "value",
    [
        {"x": float("nan")},
        {"x": float("inf")},
        {"x": Decimal("1.5")},
        {"x": b"raw"},
        {"x": {1, 2}},
        {1: "non-string key"},
        {"x": MAX_SAFE_INTEGER + 1},
        {"x": object()},
    ],
)
def test_rejects_values_without_interoperable_json_form(value):
    with pytest.raises(CanonicalizationError):
        canonicalize(value)


def test_safe_integer_bounds_are_accepted():
    assert canonicalize({"x": MAX_SAFE_INTEGER}) == f'{{"x":{MAX_SAFE_INTEGER}}}'
    assert canonicalize({"x": -MAX_SAFE_INTEGER}) == f'{{"x":-{MAX_SAFE_INTEGER}}}'


def test_hash_requires_mapping():
    with pytest.raises(CanonicalizationError, match="must be a mapping"):
        canonical_hash(["not", "a", "document"])
