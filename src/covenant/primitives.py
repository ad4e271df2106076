"""
Primitive registry: pluggable payload kinds for a mandate's ``core``.

A primitive kind names a payload contract (``swap@1``, ``transfer@1``, ...)
and maps it to a validator. New agreement types are added by registering a
kind, never by changing the Mandate type.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .accounts import is_address
from .errors import DuplicateRegistrationError, PayloadValidationError, UnknownPrimitiveError
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)

PrimitiveValidator = Callable[[Any], Any]

_KIND_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*@[0-9]+")
_BASE_UNITS_RE = re.compile(r"[0-9]+")

SWAP_V1 = "swap@1"
TRANSFER_V1 = "transfer@1"


@dataclass(frozen=True)
class PrimitiveDef:
    """A registered payload contract."""

    kind: str
    validator: PrimitiveValidator
    describe: Optional[str] = None

    def parse(self, payload: Any) -> Any:
        """Validate ``payload``; validator failures become PayloadValidationError."""
        try:
            return self.validator(payload)
        except PayloadValidationError:
            raise
        except (ValueError, TypeError, KeyError) as exc:
            raise PayloadValidationError(self.kind, str(exc)) from exc


class PrimitiveRegistry:
    """Kind -> validator table. Registration is one-time per kind."""

    def __init__(self):
        self._defs: dict[str, PrimitiveDef] = {}
        self._lock = threading.Lock()

    def register(
        self,
        kind: str,
        validator: PrimitiveValidator,
        describe: Optional[str] = None,
    ) -> PrimitiveDef:
        if not isinstance(kind, str) or not _KIND_RE.fullmatch(kind):
            raise ValueError(f"Invalid primitive kind (expected name@major): {kind!r}")
        if not callable(validator):
            raise TypeError(f"Validator for {kind} must be callable")

        definition = PrimitiveDef(kind=kind, validator=validator, describe=describe)
        with self._lock:
            if kind in self._defs:
                raise DuplicateRegistrationError(kind)
            self._defs[kind] = definition
        logger.debug("Primitive registered: %s", kind)
        return definition

    def get(self, kind: str) -> PrimitiveDef:
        definition = self._defs.get(kind)
        if definition is None:
            raise UnknownPrimitiveError(kind)
        return definition

    def has(self, kind: str) -> bool:
        return kind in self._defs

    def kinds(self) -> list[str]:
        return sorted(self._defs)

    def validate(self, kind: str, payload: Any) -> Any:
        return self.get(kind).parse(payload)


# ---------------------------------------------------------------------------
# Built-in primitives
# ---------------------------------------------------------------------------


def parse_swap_payload(payload: Any) -> dict[str, Any]:
    """Validate a ``swap@1`` payload and return its normalized form."""
    data = _require_mapping(payload)
    return {
        "chainId": _chain_id(data, "chainId"),
        "tokenIn": _address(data, "tokenIn"),
        "tokenOut": _address(data, "tokenOut"),
        "amountIn": _base_units(data, "amountIn"),
        "minOut": _base_units(data, "minOut"),
        "recipient": _address(data, "recipient"),
        "deadline": _timestamp(data, "deadline"),
    }


def parse_transfer_payload(payload: Any) -> dict[str, Any]:
    """Validate a ``transfer@1`` payload and return its normalized form."""
    data = _require_mapping(payload)
    return {
        "chainId": _chain_id(data, "chainId"),
        "token": _address(data, "token"),
        "amount": _base_units(data, "amount"),
        "recipient": _address(data, "recipient"),
    }


def register_builtin_primitives(registry: PrimitiveRegistry) -> PrimitiveRegistry:
    registry.register(SWAP_V1, parse_swap_payload, "Token swap: amountIn of tokenIn for at least minOut of tokenOut")
    registry.register(TRANSFER_V1, parse_transfer_payload, "Token transfer of amount to recipient")
    return registry


_default_registry: Optional[PrimitiveRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> PrimitiveRegistry:
    """Process-wide registry with the built-in kinds registered."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = register_builtin_primitives(PrimitiveRegistry())
        return _default_registry


def _require_mapping(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValueError(f"payload must be an object, got {type(payload).__name__}")
    return payload


def _field(data: Mapping[str, Any], name: str) -> Any:
    if name not in data or data[name] is None:
        raise ValueError(f"{name} is required")
    return data[name]


def _chain_id(data: Mapping[str, Any], name: str) -> int:
    value = _field(data, name)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value


def _address(data: Mapping[str, Any], name: str) -> str:
    value = _field(data, name)
    if not is_address(value):
        raise ValueError(f"{name} must be a 0x-prefixed 20-byte address")
    return value


def _base_units(data: Mapping[str, Any], name: str) -> str:
    value = _field(data, name)
    if not isinstance(value, str) or not _BASE_UNITS_RE.fullmatch(value):
        raise ValueError(f"{name} must be a non-negative integer base-unit string")
    return value


def _timestamp(data: Mapping[str, Any], name: str) -> str:
    value = _field(data, name)
    parse_timestamp(value)
    return value
