"""
Canonical JSON serialization and hashing for mandate documents.

Documents are serialized with the JSON Canonicalization Scheme (RFC 8785)
so that independent implementations produce byte-identical output and
therefore identical keccak-256 hashes.
"""

from __future__ import annotations

import math
from typing import Any, Mapping

import jcs
from eth_utils import keccak

from .errors import CanonicalizationError


SIGNATURES_FIELD = "signatures"

# Integers beyond this cannot be represented exactly as IEEE-754 doubles,
# which RFC 8785 number serialization is defined over.
MAX_SAFE_INTEGER = 2**53 - 1


def canonicalize(value: Any) -> str:
    """Serialize a JSON-compatible value to its RFC 8785 canonical form."""
    normalized = _normalize_for_canonical_json(value)
    canonical = jcs.canonicalize(normalized).decode("utf-8")
    if not canonical:
        raise CanonicalizationError("Canonicalization produced an empty result")
    return canonical


def canonicalize_for_hash(document: Mapping[str, Any]) -> str:
    """Canonical form of a mandate document with its signatures stripped."""
    if not isinstance(document, Mapping):
        raise CanonicalizationError(
            f"Mandate document must be a mapping, got {type(document).__name__}"
        )
    unsigned = {k: v for k, v in document.items() if k != SIGNATURES_FIELD}
    return canonicalize(unsigned)


def keccak_hex(data: bytes) -> str:
    """Return 0x-prefixed keccak-256 hex digest of raw bytes."""
    return "0x" + keccak(data).hex()


def canonical_hash(document: Mapping[str, Any]) -> str:
    """Return keccak-256 of the canonical UTF-8 bytes, signatures excluded."""
    return keccak_hex(canonicalize_for_hash(document).encode("utf-8"))


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalizationError(
                    f"Object keys must be strings, got {type(key).__name__}"
                )
            normalized[key] = _normalize_for_canonical_json(item)
        return normalized
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            raise CanonicalizationError(
                f"Integer {value} exceeds the interoperable range; encode it as a string"
            )
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(f"Non-finite number is not valid JSON: {value}")
        return value
    raise CanonicalizationError(
        f"Unsupported JSON canonicalization value type: {type(value).__name__}"
    )
