"""
Covenant — dual-signed, third-party verifiable agreements between agents.

Two parties commit to one canonical document:
Server offers and signs → Client verifies and countersigns → Anyone verifies.
"""

__version__ = "0.1.0"

from .canonical import canonical_hash, canonicalize, canonicalize_for_hash
from .primitives import PrimitiveDef, PrimitiveRegistry, default_registry
from .signing import EthAccountSigner, MessageSigning, SigAlg, TypedDataSigning
from .mandate import Mandate, Role, Signature, VerifyAllResult, VerifyResult
from .verifier import VerificationReceipt, verify_mandate_as_third_party
from .accounts import address_from_caip10, caip10, parse_caip10
from .blob_store import LocalBlobStore
from .negotiation import ClientParty, ConfirmedMandate, ServerParty
from .audit import AuditTrail, EventType

__all__ = [
    "canonicalize", "canonicalize_for_hash", "canonical_hash",
    "PrimitiveDef", "PrimitiveRegistry", "default_registry",
    "EthAccountSigner", "MessageSigning", "TypedDataSigning", "SigAlg",
    "Mandate", "Role", "Signature", "VerifyResult", "VerifyAllResult",
    "VerificationReceipt", "verify_mandate_as_third_party",
    "caip10", "parse_caip10", "address_from_caip10",
    "LocalBlobStore", "ServerParty", "ClientParty", "ConfirmedMandate",
    "AuditTrail", "EventType",
]
