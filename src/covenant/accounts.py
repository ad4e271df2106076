"""Chain-qualified (CAIP-10) account identifiers and address helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_CAIP10_RE = re.compile(
    r"^(?P<namespace>[-a-z0-9]{3,8}):(?P<reference>[-_a-zA-Z0-9]{1,32}):(?P<address>[-.%a-zA-Z0-9]{1,128})$"
)


@dataclass(frozen=True)
class AccountId:
    namespace: str
    reference: str
    address: str

    @property
    def chain_id(self) -> str:
        return f"{self.namespace}:{self.reference}"

    def __str__(self) -> str:
        return f"{self.namespace}:{self.reference}:{self.address}"


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def is_address(value: object) -> bool:
    return isinstance(value, str) and _ADDRESS_RE.match(value) is not None


def parse_caip10(account_id: str) -> AccountId:
    """Split a CAIP-10 account id into namespace, chain reference and address."""
    if not isinstance(account_id, str):
        raise ValueError(f"CAIP-10 account id must be a string, got {type(account_id).__name__}")
    match = _CAIP10_RE.match(account_id.strip())
    if match is None:
        raise ValueError(f"Invalid CAIP-10 account identifier: {account_id}")
    return AccountId(
        namespace=match.group("namespace"),
        reference=match.group("reference"),
        address=match.group("address"),
    )


def address_from_caip10(account_id: str) -> str:
    return parse_caip10(account_id).address


def caip10(chain_id: int, address: str, namespace: str = "eip155") -> str:
    """Build a CAIP-10 id, e.g. ``caip10(1, "0xabc...")`` -> ``eip155:1:0xabc...``."""
    if isinstance(chain_id, bool) or int(chain_id) <= 0:
        raise ValueError(f"Invalid chain id: {chain_id}")
    if namespace == "eip155" and not is_address(address):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return str(parse_caip10(f"{namespace}:{int(chain_id)}:{address}"))
