"""
Client-side payload construction.

A PaymentPayload answers exactly one PaymentRequirement: scheme, network,
token, amount and payee are copied verbatim, and the payer signs them as
EIP-712 typed data so the facilitator can recover who paid. The signing
domain carries the network's chain id.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Callable, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from .audit import AuditTrail, EventType
from .errors import (
    ExpiredRequirementError,
    SpendingLimitExceeded,
    UnsupportedSchemeError,
    ValidationError,
)
from .models import SUPPORTED_SCHEMES, PaymentPayload, PaymentRequirement
from .money import parse_amount
from .networks import chain_id_for
from .spending import SpendingGuard

logger = logging.getLogger(__name__)


PAYMENT_DOMAIN = {"name": "paygate", "version": "1"}

PAYMENT_TYPES = {
    "Payment": [
        {"name": "scheme", "type": "string"},
        {"name": "network", "type": "string"},
        {"name": "token", "type": "string"},
        {"name": "amount", "type": "string"},
        {"name": "payee", "type": "string"},
        {"name": "payer", "type": "string"},
        {"name": "nonce", "type": "string"},
        {"name": "timestamp", "type": "uint256"},
    ],
}


def _build_domain_type(domain: dict) -> list[dict]:
    fields = []
    if "name" in domain:
        fields.append({"name": "name", "type": "string"})
    if "version" in domain:
        fields.append({"name": "version", "type": "string"})
    if "chainId" in domain:
        fields.append({"name": "chainId", "type": "uint256"})
    if "verifyingContract" in domain:
        fields.append({"name": "verifyingContract", "type": "address"})
    return fields


def payment_domain(network: str) -> dict:
    return {**PAYMENT_DOMAIN, "chainId": chain_id_for(network)}


def payment_typed_data(message: dict[str, Any], domain: Optional[dict] = None) -> dict:
    """Full EIP-712 structure for a payment message, bound to its network's chain."""
    domain_dict = dict(domain or payment_domain(message["network"]))
    return {
        "types": {**PAYMENT_TYPES, "EIP712Domain": _build_domain_type(domain_dict)},
        "primaryType": "Payment",
        "domain": domain_dict,
        "message": message,
    }


def recover_payer(payload: PaymentPayload) -> Optional[str]:
    """Address that signed the payload, or None if the signature is unusable."""
    if not payload.signature:
        return None
    try:
        signable = encode_typed_data(full_message=payment_typed_data(payload.typed_message()))
        return Account.recover_message(signable, signature=payload.signature)
    except Exception as e:  # malformed hex, wrong length, bad curve point, unknown network
        logger.info("Signature recovery failed: %s: %s", type(e).__name__, e)
        return None


class PaymentSigner(Protocol):
    """Signing capability handed to the builder. Never exposes key material."""

    @property
    def address(self) -> str: ...

    def sign_payment(self, message: dict[str, Any]) -> str: ...


class EthAccountSigner:
    """Adapter that signs payment messages with an eth-account LocalAccount."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> EthAccountSigner:
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_payment(self, message: dict[str, Any]) -> str:
        signed = self._account.sign_typed_data(full_message=payment_typed_data(message))
        return "0x" + bytes(signed.signature).hex()


class PayloadBuilder:
    """Builds signed payloads, charging the spending guard at build time."""

    def __init__(
        self,
        guard: Optional[SpendingGuard] = None,
        clock: Callable[[], float] = time.time,
        audit: Optional[AuditTrail] = None,
    ):
        self.guard = guard
        self.audit = audit
        self._clock = clock

    def build(
        self,
        requirement: PaymentRequirement,
        signer: PaymentSigner,
        tx_hash: Optional[str] = None,
    ) -> PaymentPayload:
        now = self._clock()
        if requirement.is_expired(now):
            raise ExpiredRequirementError(
                f"Requirement for {requirement.resource or 'resource'} expired at {requirement.expiry}"
            )
        if requirement.scheme not in SUPPORTED_SCHEMES:
            raise UnsupportedSchemeError(requirement.scheme)
        chain_id_for(requirement.network)
        parse_amount(requirement.amount)
        if not requirement.payee:
            raise ValidationError("Requirement has no payee")

        # upto: pay the stated cap, no bidding
        message = {
            "scheme": requirement.scheme,
            "network": requirement.network,
            "token": requirement.token,
            "amount": requirement.amount,
            "payee": requirement.payee,
            "payer": signer.address,
            "nonce": requirement.nonce or secrets.token_hex(16),
            "timestamp": int(now),
        }
        signature = signer.sign_payment(message)

        if self.guard is not None:
            allowed, reason, ceiling = self.guard.reserve(
                signer.address, requirement.token, requirement.amount
            )
            if not allowed:
                self._log(EventType.SPEND_DENIED, requirement, signer.address, success=False, reason=reason)
                raise SpendingLimitExceeded(reason, ceiling=ceiling, amount=requirement.amount)

        payload = PaymentPayload(
            scheme=message["scheme"],
            network=message["network"],
            token=message["token"],
            amount=message["amount"],
            payee=message["payee"],
            payer=message["payer"],
            nonce=message["nonce"],
            signature=signature,
            timestamp=message["timestamp"],
            tx_hash=tx_hash,
        )
        self._log(EventType.PAYLOAD_BUILT, requirement, signer.address, reference=payload.payload_id)
        return payload

    def _log(
        self,
        event_type: EventType,
        requirement: PaymentRequirement,
        payer: str,
        success: bool = True,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            payer=payer,
            payee=requirement.payee,
            amount=requirement.amount,
            token=requirement.token,
            network=requirement.network,
            resource=requirement.resource or None,
            reference=reference,
            success=success,
            reason=reason,
        )
