"""
Protocol data model.

Requirements and payloads are frozen dataclasses: a requirement that needs a
different field is re-issued, never mutated. Wire dictionaries use the
camelCase keys of the HTTP surface.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ValidationError


X402_VERSION = 1


class Scheme(str, Enum):
    EXACT = "exact"
    UPTO = "upto"


SUPPORTED_SCHEMES = frozenset(s.value for s in Scheme)


def _require(d: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if d.get(key) not in (None, ""):
            return d[key]
    raise ValidationError(f"Missing required field: {keys[0]}")


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Expected an integer, got {value!r}") from exc


@dataclass(frozen=True)
class PaymentRequirement:
    """What a resource server accepts as payment for one resource."""

    scheme: str
    network: str
    token: str
    amount: str
    payee: str
    resource: str
    expiry: Optional[int] = None
    nonce: Optional[str] = None
    description: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expiry is not None and now > self.expiry

    def reissue(self, **changes: Any) -> PaymentRequirement:
        return replace(self, **changes)

    def to_dict(self) -> dict:
        d = {
            "scheme": self.scheme,
            "network": self.network,
            "token": self.token,
            "amount": self.amount,
            "payTo": self.payee,
            "resource": self.resource,
        }
        if self.expiry is not None:
            d["expiry"] = self.expiry
        if self.nonce is not None:
            d["nonce"] = self.nonce
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentRequirement:
        return cls(
            scheme=str(_require(d, "scheme")),
            network=str(_require(d, "network", "networkId")),
            token=str(_require(d, "token")),
            amount=str(_require(d, "amount")),
            payee=str(_require(d, "payTo", "payee", "recipient")),
            resource=str(d.get("resource") or ""),
            expiry=_optional_int(d.get("expiry")),
            nonce=d.get("nonce") or None,
            description=d.get("description") or None,
        )


@dataclass(frozen=True)
class PaymentPayload:
    """A client's signed answer to exactly one PaymentRequirement."""

    scheme: str
    network: str
    token: str
    amount: str
    payee: str
    payer: str
    nonce: str
    signature: str
    timestamp: int
    tx_hash: Optional[str] = None

    @property
    def payload_id(self) -> str:
        """Stable fingerprint used as the settlement idempotency key."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def typed_message(self) -> dict:
        """Fields covered by the payer's signature."""
        return {
            "scheme": self.scheme,
            "network": self.network,
            "token": self.token,
            "amount": self.amount,
            "payee": self.payee,
            "payer": self.payer,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> dict:
        d = {
            "scheme": self.scheme,
            "network": self.network,
            "token": self.token,
            "amount": self.amount,
            "payTo": self.payee,
            "from": self.payer,
            "nonce": self.nonce,
            "signature": self.signature,
            "timestamp": self.timestamp,
        }
        if self.tx_hash:
            d["txHash"] = self.tx_hash
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentPayload:
        return cls(
            scheme=str(_require(d, "scheme")),
            network=str(_require(d, "network", "networkId")),
            token=str(_require(d, "token")),
            amount=str(_require(d, "amount")),
            payee=str(_require(d, "payTo", "payee", "recipient")),
            payer=str(_require(d, "from", "payer")),
            nonce=str(d.get("nonce") or ""),
            signature=str(d.get("signature") or ""),
            timestamp=_optional_int(d.get("timestamp")) or 0,
            tx_hash=d.get("txHash") or d.get("transactionHash") or None,
        )


@dataclass
class VerificationResult:
    """Outcome of one verification pass. Never persisted."""

    valid: bool
    ledger_reference: Optional[str] = None
    confirmations: int = 0
    reason: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"valid": self.valid}
        if self.ledger_reference:
            d["ledgerReference"] = self.ledger_reference
        if self.confirmations:
            d["confirmations"] = self.confirmations
        if self.reason:
            d["reason"] = self.reason
        if self.retryable:
            d["retryable"] = True
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> VerificationResult:
        return cls(
            valid=bool(d.get("valid")),
            ledger_reference=d.get("ledgerReference") or d.get("transactionHash"),
            confirmations=int(d.get("confirmations") or 0),
            reason=d.get("reason") or d.get("error"),
            retryable=bool(d.get("retryable", False)),
        )


class SettlementStatus(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class SettlementResult:
    """Outcome of settling one payload. At most one success per payload."""

    success: bool
    ledger_reference: Optional[str] = None
    block_number: Optional[int] = None
    status: str = SettlementStatus.FAILED.value
    reason: Optional[str] = None
    error: Optional[str] = field(default=None, compare=False)
    retryable: bool = field(default=False, compare=False)
    attempts: int = field(default=0, compare=False)

    def receipt(self) -> dict:
        """The body of the settlement receipt header."""
        return {
            "ledgerReference": self.ledger_reference,
            "blockNumber": self.block_number,
            "status": self.status,
        }

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"success": self.success, "status": self.status}
        if self.ledger_reference:
            d["ledgerReference"] = self.ledger_reference
        if self.block_number is not None:
            d["blockNumber"] = self.block_number
        if self.reason:
            d["reason"] = self.reason
        if self.error:
            d["error"] = self.error
        if self.retryable:
            d["retryable"] = True
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> SettlementResult:
        return cls(
            success=bool(d.get("success")),
            ledger_reference=d.get("ledgerReference") or d.get("transactionHash"),
            block_number=_optional_int(d.get("blockNumber")),
            status=str(d.get("status") or SettlementStatus.FAILED.value),
            reason=d.get("reason"),
            error=d.get("error"),
            retryable=bool(d.get("retryable", False)),
        )


def challenge_body(requirements: list[PaymentRequirement], message: str = "Payment Required") -> dict:
    """Body of a 402 response."""
    return {
        "x402Version": X402_VERSION,
        "error": message,
        "accepts": [r.to_dict() for r in requirements],
    }


def parse_challenge(body: Mapping[str, Any]) -> list[PaymentRequirement]:
    accepts = body.get("accepts")
    if not isinstance(accepts, list) or not accepts:
        raise ValidationError("No payment requirements in 402 response")
    return [PaymentRequirement.from_dict(a) for a in accepts]
