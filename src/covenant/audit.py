"""
Audit trail for the mandate lifecycle.

Every create, sign, offer, countersign, verify and store is appended as one
JSON line. Each line carries an HMAC over its own payload and the previous
line's hash, so an edited, reordered or deleted line breaks the chain.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditChainError
from .storage import ensure_private_dir, ensure_private_file, exclusive_lock

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path.home() / ".covenant" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".covenant-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "COVENANT_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    MANDATE_CREATED = "mandate_created"
    CORE_SET = "core_set"
    MANDATE_SIGNED = "mandate_signed"
    MANDATE_OFFERED = "mandate_offered"
    MANDATE_COUNTERSIGNED = "mandate_countersigned"
    MANDATE_VERIFIED = "mandate_verified"
    VERIFICATION_FAILED = "verification_failed"
    MANDATE_STORED = "mandate_stored"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    mandate_id: Optional[str] = None
    mandate_hash: Optional[str] = None
    role: Optional[str] = None
    party: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained JSONL log of mandate events."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for file_path in (self.path, self.key_path):
            ensure_private_dir(file_path.parent)
            ensure_private_file(file_path)
        self._lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._key = self._load_key()

    def _load_key(self) -> bytes:
        from_env = os.getenv(AUDIT_KEY_ENV)
        if from_env:
            return from_env.encode()
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        return key

    def _digest(self, payload: dict[str, Any], prev_hash: str) -> str:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{body}".encode(), hashlib.sha256).hexdigest()

    def _records(self) -> Iterator[dict[str, Any]]:
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except ValueError as e:
                    raise AuditChainError(f"Audit chain broken: line {lineno} is not JSON") from e

    def _verified_records(self) -> Iterator[dict[str, Any]]:
        expected_prev = ""
        for record in self._records():
            payload = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
            prev_hash = record.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise AuditChainError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._digest(payload, prev_hash), record.get("event_hash") or ""):
                raise AuditChainError("Audit chain broken: event hash mismatch")
            expected_prev = record["event_hash"]
            yield record

    def _tail_hash(self) -> str:
        last = ""
        for record in self._records():
            last = record.get("event_hash") or ""
        return last

    def log(
        self,
        event_type: EventType,
        mandate_id: Optional[str] = None,
        mandate_hash: Optional[str] = None,
        role: Optional[str] = None,
        party: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        """Append one event; the chain tail is re-read under the file lock."""
        payload = {
            k: v
            for k, v in (
                ("event_type", event_type.value),
                ("timestamp", time.time()),
                ("mandate_id", mandate_id),
                ("mandate_hash", mandate_hash),
                ("role", role),
                ("party", party),
                ("success", success),
                ("reason", reason),
                ("details", details),
            )
            if v is not None
        }
        with exclusive_lock(self._lock_path):
            prev_hash = self._tail_hash()
            event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=self._digest(payload, prev_hash))
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        logger.debug("Audit event %s (%s)", event_type.value, mandate_id)
        return event

    def verify_chain(self) -> int:
        """Check the whole chain and return the number of events."""
        return sum(1 for _ in self._verified_records())

    def read_events(
        self,
        mandate_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Events in append order, newest ``limit`` kept. The full chain is verified."""
        events = [
            AuditEvent.from_record(record)
            for record in self._verified_records()
            if (mandate_id is None or record.get("mandate_id") == mandate_id)
            and (event_type is None or record.get("event_type") == event_type.value)
        ]
        return events[-limit:]

    def summary(self, mandate_id: Optional[str] = None) -> dict:
        events = self.read_events(mandate_id=mandate_id, limit=10000)
        by_type: dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "signers": sorted({e.party for e in events if e.event_type == EventType.MANDATE_SIGNED.value and e.party}),
            "last_event": events[-1].to_json() if events else None,
        }
