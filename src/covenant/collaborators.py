"""Interfaces for the services a mandate exchange runs alongside.

Messaging, blob storage, identity and validation registries live outside
this package; these protocols name only what the mandate flow consumes.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol


MessageHandler = Callable[[str, bytes], Optional[Any]]


class MessageTransport(Protocol):
    """Point-to-point delivery of opaque JSON blobs between parties."""

    def send(self, peer: str, data: bytes) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...


class BlobStore(Protocol):
    """Content-addressed storage for mandates, proofs and evidence."""

    def put(self, data: bytes) -> str: ...

    def get(self, content_id: str) -> bytes: ...


class AccountResolver(Protocol):
    def resolve_account_address(self, chain_id: int) -> str: ...


class IdentityRegistry(Protocol):
    def register_identity(self) -> str: ...


class ValidationRegistry(Protocol):
    def request_validation(self, validator: str, agent_id: str, request_uri: str, request_hash: str) -> str: ...

    def respond_to_validation(self, request_hash: str, score: int, response_uri: str) -> str: ...
