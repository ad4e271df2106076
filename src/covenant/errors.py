"""
Covenant error types.

Specific exceptions for different failure modes, enabling callers
to tell tampering from a bad signature from a stale mandate.
"""


class CovenantError(Exception):
    """Base error for all Covenant operations."""
    pass


# Mandate errors
class MandateError(CovenantError):
    """Base error for mandate construction, signing and verification."""
    pass


class ConstructionError(MandateError):
    """Required field missing or malformed when building a mandate."""
    pass


class CanonicalizationError(MandateError):
    """Document cannot be serialized under the canonical JSON scheme."""
    pass


class UnknownPrimitiveError(MandateError):
    """core.kind is not present in the primitive registry."""
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown primitive: {kind}")


class DuplicateRegistrationError(MandateError):
    """Primitive kind was already registered."""
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Primitive already registered: {kind}")


class PayloadValidationError(MandateError):
    """Payload rejected by the validator for its kind."""
    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"Invalid {kind} payload: {message}")


class CoreShapeMismatchError(MandateError):
    """Core missing, or its kind differs from the one requested."""
    pass


class SignatureMissingError(MandateError):
    """No signature attached for the requested role."""
    def __init__(self, role: str, message: str | None = None):
        self.role = role
        super().__init__(message or f"{role}Sig missing")


class HashMismatchError(MandateError):
    """Signed mandateHash differs from the hash of the current content."""
    def __init__(self, role: str, signed_hash: str, recomputed_hash: str):
        self.role = role
        self.signed_hash = signed_hash
        self.recomputed_hash = recomputed_hash
        super().__init__(
            f"{role}Sig.mandateHash mismatch: signed {signed_hash}, recomputed {recomputed_hash}"
        )


class SignatureInvalidError(MandateError):
    """Recovered signer does not match the party address."""
    def __init__(self, role: str, expected: str, recovered: str | None):
        self.role = role
        self.expected = expected
        self.recovered = recovered
        super().__init__(f"{role} signature invalid: expected {expected}, got {recovered}")


class DomainRequiredError(MandateError):
    """EIP-712 signing or verification without a domain carrying chainId."""
    pass


# Third-party verification errors
class VerificationError(CovenantError):
    """Base error for third-party business-rule failures."""
    pass


class IdentityMismatchError(VerificationError):
    """Party address differs from the one the verifier requires."""
    def __init__(self, role: str, expected: str, actual: str):
        self.role = role
        self.expected = expected
        self.actual = actual
        super().__init__(f"{role} mismatch: expected {expected}, got {actual}")


class DeadlinePassedError(VerificationError):
    """Mandate deadline is earlier than the reference time."""
    def __init__(self, deadline: str, now: str):
        self.deadline = deadline
        self.now = now
        super().__init__(f"Mandate deadline has passed: {deadline} (now {now})")


class UnexpectedCoreShapeError(VerificationError):
    """Core does not carry the requested kind or breaks its business rules."""
    pass


# Storage errors
class StorageError(CovenantError):
    """Base error for blob storage failures."""
    pass


class BlobNotFoundError(StorageError):
    """No blob stored under the content id."""
    def __init__(self, content_id: str):
        self.content_id = content_id
        super().__init__(f"Blob not found: {content_id}")


class BlobIntegrityError(StorageError):
    """Stored bytes no longer hash to their content id."""
    pass


# Negotiation errors
class NegotiationError(CovenantError):
    """Base error for the offer / countersign exchange."""
    pass


class EnvelopeError(NegotiationError):
    """Negotiation message is not a well-formed envelope."""
    pass


class MandateRejectedError(NegotiationError):
    """Receiving party declined the offered terms."""
    pass


# Audit errors
class AuditChainError(CovenantError, RuntimeError):
    """Audit log was edited, reordered or truncated in the middle."""
    pass
