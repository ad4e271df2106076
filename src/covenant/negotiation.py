"""
Offer / countersign exchange between a server and a client party.

The server proposes terms, signs them and sends the mandate; the client
verifies the server, checks the terms, countersigns and returns it; the
server re-verifies both signatures before acting on it. Handlers log and
swallow mandate failures: an invalid message is dropped, never answered.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from eth_account.signers.local import LocalAccount

from .accounts import address_from_caip10, caip10
from .audit import AuditTrail, EventType
from .collaborators import BlobStore, MessageTransport
from .errors import CovenantError, EnvelopeError, MandateRejectedError
from .mandate import Mandate, Role, VerifyAllResult
from .primitives import PrimitiveRegistry
from .signing import MandateSigner, SigningScheme, TypedDataSigning, as_signer

logger = logging.getLogger(__name__)

AcceptancePolicy = Callable[[Mandate], bool]


class MessageType(str, Enum):
    MANDATE = "mandate"
    MANDATE_COUNTERSIGNED = "mandate_countersigned"


def encode_envelope(message_type: MessageType, mandate: Mandate) -> bytes:
    return json.dumps(
        {"type": message_type.value, "data": mandate.to_dict()},
        separators=(",", ":"),
    ).encode("utf-8")


def decode_envelope(data: Union[bytes, str]) -> tuple[MessageType, dict[str, Any]]:
    try:
        message = json.loads(data)
    except ValueError as e:
        raise EnvelopeError(f"Message is not JSON: {e}") from e
    if not isinstance(message, dict) or not isinstance(message.get("data"), dict):
        raise EnvelopeError("Envelope must be an object with an object 'data' field")
    try:
        message_type = MessageType(message.get("type"))
    except ValueError as e:
        raise EnvelopeError(f"Unknown message type: {message.get('type')!r}") from e
    return message_type, message["data"]


def accept_registered_payload(mandate: Mandate) -> bool:
    """Default client policy: core must be a registered kind with a valid payload."""
    kind = mandate.core.get("kind")
    if not isinstance(kind, str) or not mandate.registry.has(kind):
        return False
    return mandate.try_core_as(mandate.registry.get(kind).validator, kind) is not None


@dataclass
class ConfirmedMandate:
    mandate: Mandate
    signatures: VerifyAllResult
    content_id: Optional[str] = None


def _domain_of(scheme: Optional[SigningScheme]) -> Optional[dict[str, Any]]:
    return dict(scheme.domain) if isinstance(scheme, TypedDataSigning) else None


class ServerParty:
    """Proposes mandates and confirms countersigned ones."""

    def __init__(
        self,
        signer: Union[MandateSigner, LocalAccount],
        transport: MessageTransport,
        *,
        chain_id: int,
        scheme: Optional[SigningScheme] = None,
        client_domain: Optional[Mapping[str, Any]] = None,
        blob_store: Optional[BlobStore] = None,
        registry: Optional[PrimitiveRegistry] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.signer = as_signer(signer)
        self.transport = transport
        self.chain_id = chain_id
        self.scheme = scheme
        self.client_domain = client_domain
        self.blob_store = blob_store
        self.registry = registry
        self.audit = audit
        self._pending: dict[str, Mandate] = {}
        self._lock = threading.Lock()

    @property
    def account_id(self) -> str:
        return caip10(self.chain_id, self.signer.address)

    def offer(
        self,
        peer: str,
        *,
        client_address: str,
        deadline: str,
        kind: str,
        payload: Any,
        intent: str = "",
        version: Optional[str] = None,
    ) -> Mandate:
        """Build, sign as server and send a mandate. Construction errors propagate."""
        mandate = Mandate(
            client=caip10(self.chain_id, client_address),
            server=self.account_id,
            deadline=deadline,
            intent=intent,
            version=version,
            registry=self.registry,
        )
        mandate.set_core(kind, payload)
        mandate.sign_as_server(self.signer, self.scheme)

        with self._lock:
            self._pending[mandate.mandate_id] = mandate
        self.transport.send(peer, encode_envelope(MessageType.MANDATE, mandate))
        self._log(EventType.MANDATE_OFFERED, mandate, role=Role.SERVER.value, party=peer)
        logger.info("Mandate %s offered to %s (%s)", mandate.mandate_id, peer, kind)
        return mandate

    def handle_message(self, peer: str, data: bytes) -> Optional[ConfirmedMandate]:
        try:
            message_type, document = decode_envelope(data)
            if message_type is not MessageType.MANDATE_COUNTERSIGNED:
                logger.debug("Ignoring %s message from %s", message_type.value, peer)
                return None
            return self._confirm(document)
        except CovenantError as exc:
            logger.warning("Rejected countersigned mandate from %s: %s", peer, exc)
            self._log(EventType.VERIFICATION_FAILED, None, party=peer, success=False, reason=str(exc))
            return None

    def _confirm(self, document: dict[str, Any]) -> ConfirmedMandate:
        mandate = Mandate.from_dict(document, registry=self.registry)
        with self._lock:
            offered = self._pending.get(mandate.mandate_id)
        if offered is None:
            raise MandateRejectedError(f"No pending offer for mandate {mandate.mandate_id}")
        if offered.mandate_hash() != mandate.mandate_hash():
            raise MandateRejectedError(f"Terms of mandate {mandate.mandate_id} changed after the offer")

        signatures = mandate.verify_all(self.client_domain, _domain_of(self.scheme))
        self._log(EventType.MANDATE_VERIFIED, mandate, party=mandate.client)

        content_id = self._store(mandate)
        with self._lock:
            self._pending.pop(mandate.mandate_id, None)
        logger.info("Mandate %s confirmed by both parties", mandate.mandate_id)
        return ConfirmedMandate(mandate=mandate, signatures=signatures, content_id=content_id)

    def _store(self, mandate: Mandate) -> Optional[str]:
        """Put the confirmed document; a store failure is logged and leaves content_id None."""
        if self.blob_store is None:
            return None
        try:
            content_id = self.blob_store.put(mandate.to_json(indent=None).encode("utf-8"))
        except Exception as exc:
            logger.warning("Mandate %s confirmed but not stored: %s", mandate.mandate_id, exc)
            self._log(EventType.MANDATE_STORED, mandate, success=False, reason=str(exc))
            return None
        self._log(EventType.MANDATE_STORED, mandate, details={"content_id": content_id})
        return content_id

    def _log(self, event_type: EventType, mandate: Optional[Mandate], **kwargs) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            mandate_id=mandate.mandate_id if mandate else None,
            mandate_hash=mandate.mandate_hash() if mandate else None,
            **kwargs,
        )


class ClientParty:
    """Verifies offered mandates and countersigns acceptable ones."""

    def __init__(
        self,
        signer: Union[MandateSigner, LocalAccount],
        transport: MessageTransport,
        *,
        scheme: Optional[SigningScheme] = None,
        server_domain: Optional[Mapping[str, Any]] = None,
        accept: AcceptancePolicy = accept_registered_payload,
        registry: Optional[PrimitiveRegistry] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.signer = as_signer(signer)
        self.transport = transport
        self.scheme = scheme
        self.server_domain = server_domain
        self.accept = accept
        self.registry = registry
        self.audit = audit

    def handle_message(self, peer: str, data: bytes) -> Optional[Mandate]:
        try:
            message_type, document = decode_envelope(data)
            if message_type is not MessageType.MANDATE:
                logger.debug("Ignoring %s message from %s", message_type.value, peer)
                return None
            mandate = self.countersign(document)
        except CovenantError as exc:
            logger.warning("Rejected mandate from %s: %s", peer, exc)
            if self.audit is not None:
                self.audit.log(EventType.VERIFICATION_FAILED, party=peer, success=False, reason=str(exc))
            return None

        self.transport.send(peer, encode_envelope(MessageType.MANDATE_COUNTERSIGNED, mandate))
        return mandate

    def countersign(self, document: Mapping[str, Any]) -> Mandate:
        """Verify the server's signature and our terms, then sign as client."""
        mandate = Mandate.from_dict(document, registry=self.registry)
        mandate.verify_role(Role.SERVER, self.server_domain)

        if address_from_caip10(mandate.client).lower() != self.signer.address.lower():
            raise MandateRejectedError(f"Mandate {mandate.mandate_id} names a different client")
        if not self.accept(mandate):
            raise MandateRejectedError(f"Terms of mandate {mandate.mandate_id} not acceptable")

        mandate.sign_as_client(self.signer, self.scheme)
        if self.audit is not None:
            self.audit.log(
                EventType.MANDATE_COUNTERSIGNED,
                mandate_id=mandate.mandate_id,
                mandate_hash=mandate.mandate_hash(),
                role=Role.CLIENT.value,
                party=mandate.server,
            )
        logger.info("Mandate %s countersigned", mandate.mandate_id)
        return mandate
