"""
Mandate creation, signing, and verification.

A Mandate is a canonical agreement document between a client and a server.
Both parties sign the keccak-256 hash of its RFC 8785 form (signatures
excluded), so any later change to the content invalidates prior signatures.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from eth_account.signers.local import LocalAccount

from .accounts import parse_caip10
from .canonical import canonical_hash, canonicalize_for_hash
from .errors import (
    ConstructionError,
    CoreShapeMismatchError,
    CovenantError,
    HashMismatchError,
    SignatureInvalidError,
    SignatureMissingError,
)
from .primitives import PrimitiveDef, PrimitiveRegistry, PrimitiveValidator, default_registry
from .signing import (
    MandateSigner,
    MessageSigning,
    SigAlg,
    SigningScheme,
    as_signer,
    recover_signer,
    sign_canonical,
)
from .timestamps import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

MANDATE_SCHEMA_VERSION = "0.1.0"

_HEX32_RE = re.compile(r"0x[0-9a-fA-F]{64}")
_HEX_RE = re.compile(r"0x[0-9a-fA-F]+")
_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


class Role(str, Enum):
    CLIENT = "client"
    SERVER = "server"

    @property
    def signature_key(self) -> str:
        return f"{self.value}Sig"


@dataclass(frozen=True)
class Signature:
    """One role's signature over the mandate hash."""

    alg: SigAlg
    mandate_hash: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {
            "alg": self.alg.value,
            "mandateHash": self.mandate_hash,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Signature:
        if not isinstance(d, Mapping):
            raise ConstructionError("Signature must be an object")
        try:
            alg = SigAlg(d.get("alg"))
        except ValueError as e:
            raise ConstructionError(f"Unsupported signature alg: {d.get('alg')!r}") from e
        mandate_hash = d.get("mandateHash")
        if not isinstance(mandate_hash, str) or not _HEX32_RE.fullmatch(mandate_hash):
            raise ConstructionError("Signature mandateHash must be 0x + 64 hex chars")
        signature = d.get("signature")
        if not isinstance(signature, str) or not _HEX_RE.fullmatch(signature):
            raise ConstructionError("Signature must be a 0x-prefixed hex string")
        return cls(alg=alg, mandate_hash=mandate_hash, signature=signature)


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    recovered: str
    recomputed_hash: str
    alg: SigAlg

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "recovered": self.recovered,
            "recomputedHash": self.recomputed_hash,
            "alg": self.alg.value,
        }


@dataclass(frozen=True)
class VerifyAllResult:
    client: VerifyResult
    server: VerifyResult

    def to_dict(self) -> dict[str, Any]:
        return {"client": self.client.to_dict(), "server": self.server.to_dict()}


class Mandate:
    """A canonical, dual-signed agreement between client and server."""

    def __init__(
        self,
        *,
        client: Optional[str] = None,
        server: Optional[str] = None,
        deadline: Optional[str] = None,
        version: Optional[str] = None,
        mandate_id: Optional[str] = None,
        created_at: Optional[str] = None,
        intent: Optional[str] = None,
        core: Optional[Mapping[str, Any]] = None,
        signatures: Optional[Mapping[str, Any]] = None,
        registry: Optional[PrimitiveRegistry] = None,
    ):
        if not client or not server:
            raise ConstructionError("client and server (CAIP-10) are required")
        if not deadline:
            raise ConstructionError("deadline (ISO 8601) is required")
        for role, account_id in (("client", client), ("server", server)):
            try:
                parse_caip10(account_id)
            except ValueError as e:
                raise ConstructionError(f"{role}: {e}") from e
        created_at = created_at or format_timestamp(utc_now())
        for name, value in (("deadline", deadline), ("createdAt", created_at)):
            try:
                parse_timestamp(value)
            except ValueError as e:
                raise ConstructionError(f"{name}: {e}") from e
        version = version or MANDATE_SCHEMA_VERSION
        intent = "" if intent is None else intent
        if not isinstance(version, str) or not isinstance(intent, str):
            raise ConstructionError("version and intent must be strings")
        if core is not None and not isinstance(core, Mapping):
            raise ConstructionError("core must be an object")
        mandate_id = mandate_id or new_mandate_id()
        if not isinstance(mandate_id, str):
            raise ConstructionError("mandateId must be a string")

        self._registry = registry or default_registry()
        doc: dict[str, Any] = {
            "mandateId": mandate_id,
            "version": version,
            "client": client,
            "server": server,
            "createdAt": created_at,
            "deadline": deadline,
            "intent": intent,
            "core": copy.deepcopy(dict(core or {})),
        }
        if signatures is not None:
            doc["signatures"] = _parse_signatures(signatures)
        self._doc = doc

    # ---- views ----

    @property
    def mandate_id(self) -> str:
        return self._doc["mandateId"]

    @property
    def client(self) -> str:
        return self._doc["client"]

    @property
    def server(self) -> str:
        return self._doc["server"]

    @property
    def deadline(self) -> str:
        return self._doc["deadline"]

    @property
    def intent(self) -> str:
        return self._doc["intent"]

    @property
    def core(self) -> dict[str, Any]:
        return copy.deepcopy(self._doc["core"])

    @property
    def registry(self) -> PrimitiveRegistry:
        return self._registry

    def signature_for(self, role: Union[Role, str]) -> Optional[Signature]:
        sigs = self._doc.get("signatures") or {}
        raw = sigs.get(Role(role).signature_key)
        return Signature.from_dict(raw) if raw is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Independent snapshot of the full document, signatures included."""
        return copy.deepcopy(self._doc)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self._doc, indent=indent, ensure_ascii=False)

    def to_canonical_string(self) -> str:
        return canonicalize_for_hash(self._doc)

    def mandate_hash(self) -> str:
        return canonical_hash(self._doc)

    # ---- core (pluggable primitives) ----

    def set_core(self, kind: str, payload: Any) -> Mandate:
        """Validate ``payload`` through the registry and replace ``core``.

        Existing signatures are kept but no longer match; re-sign afterwards.
        """
        typed = self._registry.get(kind).parse(payload)
        core = copy.deepcopy({"kind": kind, "payload": typed})
        # Unhashable payloads must fail here, not at signing time.
        canonical_hash({**self._doc, "core": core})
        self._doc = {**self._doc, "core": core}
        return self

    def is_kind(self, kind: str) -> bool:
        core = self._doc.get("core")
        return isinstance(core, Mapping) and core.get("kind") == kind

    def core_as(self, validator: PrimitiveValidator, expected_kind: Optional[str] = None) -> Any:
        """Re-validate the core payload through ``validator``."""
        core = self._doc.get("core")
        if not isinstance(core, Mapping) or not core:
            raise CoreShapeMismatchError("core missing")
        if expected_kind is not None and core.get("kind") != expected_kind:
            raise CoreShapeMismatchError(
                f"core.kind mismatch: expected {expected_kind}, got {core.get('kind')}"
            )
        kind = str(core.get("kind", "<untagged>"))
        return PrimitiveDef(kind=kind, validator=validator).parse(copy.deepcopy(core.get("payload")))

    def try_core_as(self, validator: PrimitiveValidator, expected_kind: Optional[str] = None) -> Any:
        """Like core_as, but returns None instead of raising."""
        try:
            return self.core_as(validator, expected_kind)
        except Exception:
            return None

    def core_as_kind(self, kind: str) -> Any:
        core = self._doc.get("core")
        if not isinstance(core, Mapping) or core.get("kind") != kind:
            actual = core.get("kind") if isinstance(core, Mapping) else None
            raise CoreShapeMismatchError(f"core.kind mismatch: expected {kind}, got {actual}")
        return self._registry.get(kind).parse(copy.deepcopy(core.get("payload")))

    # ---- signing & verification ----

    def sign(
        self,
        role: Union[Role, str],
        signer: Union[MandateSigner, LocalAccount],
        scheme: Optional[SigningScheme] = None,
    ) -> Signature:
        """Sign as ``role``, replacing any signature that role already had."""
        role = Role(role)
        scheme = scheme or MessageSigning()
        identity = as_signer(signer)
        canonical = self.to_canonical_string()
        mandate_hash = canonical_hash(self._doc)
        signature = Signature(
            alg=scheme.alg,
            mandate_hash=mandate_hash,
            signature=sign_canonical(identity, scheme, canonical, mandate_hash),
        )
        signatures = dict(self._doc.get("signatures") or {})
        signatures[role.signature_key] = signature.to_dict()
        self._doc = {**self._doc, "signatures": signatures}
        logger.info(
            "Mandate %s signed as %s (alg: %s, signer: %s)",
            self.mandate_id,
            role.value,
            scheme.alg.value,
            identity.address,
        )
        return signature

    def sign_as_client(self, signer, scheme: Optional[SigningScheme] = None) -> Signature:
        return self.sign(Role.CLIENT, signer, scheme)

    def sign_as_server(self, signer, scheme: Optional[SigningScheme] = None) -> Signature:
        return self.sign(Role.SERVER, signer, scheme)

    def verify_role(
        self,
        role: Union[Role, str],
        domain: Optional[Mapping[str, Any]] = None,
    ) -> VerifyResult:
        role = Role(role)
        if not self._doc.get("signatures"):
            raise SignatureMissingError(role.value, "no signatures")
        sig = self.signature_for(role)
        if sig is None:
            raise SignatureMissingError(role.value)

        recomputed = self.mandate_hash()
        if sig.mandate_hash.lower() != recomputed.lower():
            raise HashMismatchError(role.value, sig.mandate_hash, recomputed)

        expected = parse_caip10(self._doc[role.value]).address.lower()
        try:
            recovered = recover_signer(
                sig.alg,
                sig.signature,
                self.to_canonical_string(),
                sig.mandate_hash,
                domain,
            )
        except CovenantError:
            raise
        except Exception as exc:
            raise SignatureInvalidError(role.value, expected, None) from exc

        if recovered.lower() != expected:
            raise SignatureInvalidError(role.value, expected, recovered)
        logger.debug("Mandate %s %s signature verified (%s)", self.mandate_id, role.value, recovered)
        return VerifyResult(ok=True, recovered=recovered, recomputed_hash=recomputed, alg=sig.alg)

    def verify_all(
        self,
        client_domain: Optional[Mapping[str, Any]] = None,
        server_domain: Optional[Mapping[str, Any]] = None,
    ) -> VerifyAllResult:
        return VerifyAllResult(
            client=self.verify_role(Role.CLIENT, client_domain),
            server=self.verify_role(Role.SERVER, server_domain),
        )

    # ---- serialization ----

    @classmethod
    def from_dict(cls, d: Any, registry: Optional[PrimitiveRegistry] = None) -> Mandate:
        """Rebuild a mandate, signatures included, from a wire document."""
        if not isinstance(d, Mapping):
            raise ConstructionError(f"Mandate document must be an object, got {type(d).__name__}")
        return cls(
            client=d.get("client"),
            server=d.get("server"),
            deadline=d.get("deadline"),
            version=d.get("version"),
            mandate_id=d.get("mandateId"),
            created_at=d.get("createdAt"),
            intent=d.get("intent"),
            core=d.get("core"),
            signatures=d.get("signatures"),
            registry=registry,
        )

    @classmethod
    def from_json(cls, text: Union[str, bytes], registry: Optional[PrimitiveRegistry] = None) -> Mandate:
        try:
            document = json.loads(text)
        except ValueError as e:
            raise ConstructionError(f"Mandate is not valid JSON: {e}") from e
        return cls.from_dict(document, registry=registry)

    def __repr__(self) -> str:
        return f"Mandate(mandate_id={self.mandate_id!r}, client={self.client!r}, server={self.server!r})"


def new_mandate_id() -> str:
    """Return a ULID: 48-bit millisecond timestamp + 80 random bits, Crockford base32."""
    value = (int(time.time() * 1000) << 80) | secrets.randbits(80)
    chars = []
    for _ in range(26):
        chars.append(_CROCKFORD32[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def _parse_signatures(signatures: Any) -> dict[str, dict[str, str]]:
    if not isinstance(signatures, Mapping):
        raise ConstructionError("signatures must be an object")
    allowed = {role.signature_key for role in Role}
    unknown = set(signatures) - allowed
    if unknown:
        raise ConstructionError(f"Unknown signature roles: {sorted(unknown)}")
    return {
        key: dict(Signature.from_dict(value).to_dict())
        for key, value in signatures.items()
        if value is not None
    }
