"""
Audit trail for payment events.

Challenges, built payloads, spend denials, verifications and settlements are
appended as JSONL entries. Each entry's hash is an HMAC over the previous
entry's hash and its own fields, so editing, dropping or reordering lines
breaks the chain on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".paygate" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".paygate-secrets" / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    CHALLENGE_ISSUED = "challenge_issued"
    PAYLOAD_BUILT = "payload_built"
    SPEND_DENIED = "spend_denied"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"
    SETTLEMENT_COMPLETED = "settlement_completed"
    SETTLEMENT_FAILED = "settlement_failed"


class AuditChainError(RuntimeError):
    def __init__(self, message: str, line: int):
        self.line = line
        super().__init__(f"Audit chain broken at line {line}: {message}")


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    payer: Optional[str] = None
    payee: Optional[str] = None
    amount: Optional[str] = None
    token: Optional[str] = None
    network: Optional[str] = None
    resource: Optional[str] = None
    reference: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def body(self) -> dict:
        """The hashed fields: everything set except the chain links."""
        return {k: v for k, v in asdict(self).items() if v is not None and k not in _CHAIN_FIELDS}

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for p in (self.path, self.key_path):
            ensure_private_dir(p.parent)
            ensure_private_file(p)

        self._lock = threading.Lock()
        self._key = self._load_key()
        self._last_hash = ""
        for record in self._records():
            self._last_hash = record.get("event_hash", "")

    def _load_key(self) -> bytes:
        env_key = os.getenv("PAYGATE_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        key = self.key_path.read_bytes().strip()
        if not key:
            key = secrets.token_hex(32).encode()
            self.key_path.write_bytes(key)
        return key

    def _records(self) -> Iterator[dict]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _link(self, body: dict, prev_hash: str) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def log(
        self,
        event_type: EventType,
        payer: Optional[str] = None,
        payee: Optional[str] = None,
        amount: Optional[str] = None,
        token: Optional[str] = None,
        network: Optional[str] = None,
        resource: Optional[str] = None,
        reference: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            payer=payer,
            payee=payee,
            amount=amount,
            token=token,
            network=network,
            resource=resource,
            reference=reference,
            success=success,
            reason=reason,
            details=details,
        )
        with self._lock:
            event.prev_hash = self._last_hash or None
            event.event_hash = self._link(event.body(), self._last_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = event.event_hash
        return event

    def verify(self) -> list[AuditEvent]:
        """Walk the whole chain and return its events; raises AuditChainError."""
        events: list[AuditEvent] = []
        prev = ""
        for line, record in enumerate(self._records(), start=1):
            event = AuditEvent.from_record(record)
            if (event.prev_hash or "") != prev:
                raise AuditChainError("previous hash mismatch", line)
            if not hmac.compare_digest(self._link(event.body(), prev), event.event_hash or ""):
                raise AuditChainError("event hash mismatch", line)
            prev = event.event_hash
            events.append(event)

        with self._lock:
            self._last_hash = prev
        return events

    def read_events(
        self,
        payer: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [
            e
            for e in self.verify()
            if (payer is None or (e.payer or "").lower() == payer.lower())
            and (event_type is None or e.event_type == event_type.value)
        ]
        return events[-limit:]
