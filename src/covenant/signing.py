"""
Signature schemes for mandates.

Two schemes are supported:

* ``eip191`` (MessageSigning): personal-sign over the canonical UTF-8 bytes.
* ``eip712`` (TypedDataSigning): typed-data signature binding only the
  ``mandateHash`` under a caller-supplied domain, which must carry a chainId.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Union, runtime_checkable

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount

from .errors import DomainRequiredError


MANDATE_TYPES: dict[str, list[dict[str, str]]] = {
    "Mandate": [{"name": "mandateHash", "type": "bytes32"}],
}

_DOMAIN_KEYS = ("name", "version", "chainId", "verifyingContract", "salt")


class SigAlg(str, Enum):
    EIP191 = "eip191"
    EIP712 = "eip712"


@dataclass(frozen=True)
class MessageSigning:
    """EIP-191 personal-sign over the canonical mandate bytes."""

    @property
    def alg(self) -> SigAlg:
        return SigAlg.EIP191


@dataclass(frozen=True)
class TypedDataSigning:
    """EIP-712 signature over ``Mandate(bytes32 mandateHash)``."""

    domain: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "domain", require_domain(self.domain))

    @property
    def alg(self) -> SigAlg:
        return SigAlg.EIP712


SigningScheme = Union[MessageSigning, TypedDataSigning]


@runtime_checkable
class MandateSigner(Protocol):
    """Signing identity. Implementations may be backed by a remote or hardware key."""

    @property
    def address(self) -> str: ...

    def sign_message(self, data: bytes) -> bytes: ...

    def sign_typed_data(
        self,
        domain: Mapping[str, Any],
        types: Mapping[str, list],
        message: Mapping[str, Any],
    ) -> bytes: ...


class EthAccountSigner:
    """Adapter that wraps eth-account LocalAccount for the mandate signer protocol."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "EthAccountSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_message(self, data: bytes) -> bytes:
        signed = self._account.sign_message(encode_defunct(primitive=data))
        return bytes(signed.signature)

    def sign_typed_data(
        self,
        domain: Mapping[str, Any],
        types: Mapping[str, list],
        message: Mapping[str, Any],
    ) -> bytes:
        signed = self._account.sign_typed_data(dict(domain), dict(types), dict(message))
        return bytes(signed.signature)


def as_signer(identity: Union[MandateSigner, LocalAccount]) -> MandateSigner:
    if isinstance(identity, LocalAccount):
        return EthAccountSigner(identity)
    return identity


def require_domain(domain: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Return a plain EIP-712 domain dict, failing unless it has an integer chainId."""
    if not isinstance(domain, Mapping):
        raise DomainRequiredError("EIP-712 requires a domain; none given (needs an integer chainId)")
    chain_id = domain.get("chainId")
    if isinstance(chain_id, bool) or not isinstance(chain_id, int):
        raise DomainRequiredError("EIP-712 requires a domain with an integer chainId")
    unknown = set(domain) - set(_DOMAIN_KEYS)
    if unknown:
        raise DomainRequiredError(f"Unsupported EIP-712 domain fields: {sorted(unknown)}")
    return {k: domain[k] for k in _DOMAIN_KEYS if k in domain}


def scheme_for(alg: Union[SigAlg, str], domain: Optional[Mapping[str, Any]] = None) -> SigningScheme:
    """Build a signing scheme from its wire name."""
    selected = SigAlg(alg)
    if selected is SigAlg.EIP191:
        return MessageSigning()
    return TypedDataSigning(domain)  # type: ignore[arg-type]


def sign_canonical(
    signer: MandateSigner,
    scheme: SigningScheme,
    canonical: str,
    mandate_hash: str,
) -> str:
    """Sign a mandate and return the 0x-prefixed signature."""
    if isinstance(scheme, MessageSigning):
        raw = signer.sign_message(canonical.encode("utf-8"))
    elif isinstance(scheme, TypedDataSigning):
        raw = signer.sign_typed_data(scheme.domain, MANDATE_TYPES, _typed_message(mandate_hash))
    else:
        raise TypeError(f"Unsupported signing scheme: {scheme!r}")
    return "0x" + bytes(raw).hex()


def recover_signer(
    alg: Union[SigAlg, str],
    signature: str,
    canonical: str,
    mandate_hash: str,
    domain: Optional[Mapping[str, Any]] = None,
) -> str:
    """Recover the signing address using the same scheme that produced ``signature``."""
    selected = SigAlg(alg)
    if selected is SigAlg.EIP191:
        signable = encode_defunct(primitive=canonical.encode("utf-8"))
    else:
        signable = encode_typed_data(
            require_domain(domain),
            MANDATE_TYPES,
            _typed_message(mandate_hash),
        )
    return Account.recover_message(signable, signature=bytes.fromhex(_strip_0x(signature)))


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def _typed_message(mandate_hash: str) -> dict[str, bytes]:
    return {"mandateHash": bytes.fromhex(_strip_0x(mandate_hash))}
