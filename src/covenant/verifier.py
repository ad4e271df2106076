"""
Third-party mandate verification.

An observer holding only the serialized mandate re-derives the canonical
hash, recovers both signers and checks parties, deadline and payload shape.
No state is kept between calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .accounts import address_from_caip10, normalize_address
from .errors import (
    DeadlinePassedError,
    IdentityMismatchError,
    PayloadValidationError,
    UnexpectedCoreShapeError,
)
from .mandate import Mandate, VerifyAllResult
from .primitives import SWAP_V1, TRANSFER_V1, PrimitiveRegistry
from .timestamps import format_timestamp, parse_timestamp, utc_now


BusinessRule = Callable[[Mapping[str, Any]], None]


def _nonzero(field_name: str) -> BusinessRule:
    def check(payload: Mapping[str, Any]) -> None:
        if int(payload[field_name]) == 0:
            raise UnexpectedCoreShapeError(f"bad {field_name}: must be non-zero")

    return check


DEFAULT_BUSINESS_RULES: dict[str, list[BusinessRule]] = {
    SWAP_V1: [_nonzero("amountIn")],
    TRANSFER_V1: [_nonzero("amount")],
}


@dataclass(frozen=True)
class VerificationReceipt:
    """Self-contained result a verifier can persist alongside the mandate."""

    ok: bool
    parties: dict[str, str]
    signatures: VerifyAllResult
    mandate_hash: str
    core: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "parties": dict(self.parties),
            "signatures": self.signatures.to_dict(),
            "mandateHash": self.mandate_hash,
            "core": self.core,
        }


def verify_mandate_as_third_party(
    document: Any,
    *,
    require_client: Optional[str] = None,
    require_server: Optional[str] = None,
    now: Optional[datetime] = None,
    client_domain: Optional[Mapping[str, Any]] = None,
    server_domain: Optional[Mapping[str, Any]] = None,
    primitive: Optional[str] = None,
    registry: Optional[PrimitiveRegistry] = None,
    rules: Optional[Mapping[str, list[BusinessRule]]] = None,
) -> VerificationReceipt:
    """Fully verify an untrusted mandate document; the first failed check raises.

    Identity checks run only when ``require_client`` / ``require_server`` are
    given. Domains are needed only for roles that signed with EIP-712.
    """
    mandate = Mandate.from_dict(document, registry=registry)

    signatures = mandate.verify_all(client_domain, server_domain)

    client_addr = address_from_caip10(mandate.client).lower()
    server_addr = address_from_caip10(mandate.server).lower()
    if require_client and client_addr != _required_address("client", require_client, client_addr):
        raise IdentityMismatchError("client", require_client, client_addr)
    if require_server and server_addr != _required_address("server", require_server, server_addr):
        raise IdentityMismatchError("server", require_server, server_addr)

    reference = now or utc_now()
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    if reference > parse_timestamp(mandate.deadline):
        raise DeadlinePassedError(mandate.deadline, format_timestamp(reference))

    if primitive is not None:
        _check_primitive(mandate, primitive, DEFAULT_BUSINESS_RULES if rules is None else rules)

    return VerificationReceipt(
        ok=True,
        parties={"client": client_addr, "server": server_addr},
        signatures=signatures,
        mandate_hash=mandate.mandate_hash(),
        core=mandate.core,
    )


def _check_primitive(
    mandate: Mandate,
    kind: str,
    rules: Mapping[str, list[BusinessRule]],
) -> None:
    if not mandate.is_kind(kind):
        raise UnexpectedCoreShapeError(
            f"unexpected core shape for {kind}: got kind {mandate.core.get('kind')!r}"
        )
    try:
        payload = mandate.core_as_kind(kind)
    except PayloadValidationError as exc:
        raise UnexpectedCoreShapeError(f"unexpected core shape for {kind}: {exc}") from exc
    for rule in rules.get(kind, []):
        rule(payload)


def _required_address(role: str, required: str, actual: str) -> str:
    """Lower-case address from a bare address or a CAIP-10 account id."""
    try:
        if ":" in required:
            required = address_from_caip10(required)
        return normalize_address(required)
    except ValueError as exc:
        raise IdentityMismatchError(role, required, actual) from exc
