"""
Payload verification.

Checks run in a fixed order and stop at the first failure: structural match
against the requirement, freshness, then the ledger proof. Verification is
read-only, so calling it twice on the same inputs gives the same answer.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import TRANSIENT_ERRORS, ValidationError
from .ledger import LedgerClient, run_with_timeout
from .models import (
    SUPPORTED_SCHEMES,
    PaymentPayload,
    PaymentRequirement,
    Scheme,
    VerificationResult,
)
from .money import parse_amount
from .networks import is_supported_network

logger = logging.getLogger(__name__)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def structural_mismatch(payload: PaymentPayload, requirement: PaymentRequirement) -> Optional[str]:
    """Return the first field that differs between payload and requirement."""
    if requirement.scheme not in SUPPORTED_SCHEMES:
        return "unsupported_scheme"
    if not is_supported_network(requirement.network):
        return "unsupported_network"
    if payload.scheme != requirement.scheme:
        return "scheme_mismatch"
    if payload.network != requirement.network:
        return "network_mismatch"
    if not _same(payload.token, requirement.token):
        return "token_mismatch"
    # Exact string comparison, "1.0" is not "1"
    if payload.amount != requirement.amount:
        return "amount_mismatch"
    if not _same(payload.payee, requirement.payee):
        return "payee_mismatch"
    if requirement.nonce is not None and payload.nonce != requirement.nonce:
        return "nonce_mismatch"
    return None


def _value_matches(scheme: str, proven: str, required: str) -> bool:
    try:
        proven_value = parse_amount(proven)
        required_value = parse_amount(required)
    except ValidationError:
        return False
    if scheme == Scheme.UPTO.value:
        return Decimal(0) < proven_value <= required_value
    return proven_value == required_value


class VerificationEngine:
    """Validates a payload against the requirement it claims to answer."""

    def __init__(
        self,
        ledger: LedgerClient,
        clock: Callable[[], float] = time.time,
        default_timeout: Optional[float] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.ledger = ledger
        self.default_timeout = default_timeout
        self.audit = audit
        self._clock = clock

    def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        result = self._verify(payload, requirement, timeout if timeout is not None else self.default_timeout)
        self._log(payload, requirement, result)
        return result

    def _verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float],
    ) -> VerificationResult:
        mismatch = structural_mismatch(payload, requirement)
        if mismatch:
            return VerificationResult(valid=False, reason=mismatch)

        if requirement.is_expired(self._clock()):
            return VerificationResult(valid=False, reason="requirement_expired")

        try:
            proof = run_with_timeout(self.ledger.check_proof, timeout, payload, requirement, timeout)
        except TRANSIENT_ERRORS as e:
            logger.warning("Proof check unavailable: %s: %s", type(e).__name__, e)
            return VerificationResult(valid=False, reason="ledger_unavailable", retryable=True)

        if not proof.found:
            return VerificationResult(valid=False, reason="proof_absent")
        if not proof.succeeded:
            return VerificationResult(valid=False, reason="proof_failed", ledger_reference=proof.ledger_reference)
        if proof.token is not None and not _same(proof.token, requirement.token):
            return VerificationResult(valid=False, reason="token_mismatch", ledger_reference=proof.ledger_reference)
        if proof.value is not None and not _value_matches(requirement.scheme, proof.value, requirement.amount):
            return VerificationResult(valid=False, reason="value_mismatch", ledger_reference=proof.ledger_reference)
        if proof.recipient is not None and not _same(proof.recipient, requirement.payee):
            return VerificationResult(
                valid=False, reason="recipient_mismatch", ledger_reference=proof.ledger_reference
            )

        return VerificationResult(
            valid=True,
            ledger_reference=proof.ledger_reference,
            confirmations=proof.confirmations,
        )

    def _log(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        result: VerificationResult,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.VERIFICATION_PASSED if result.valid else EventType.VERIFICATION_FAILED,
            payer=payload.payer,
            payee=requirement.payee,
            amount=requirement.amount,
            token=requirement.token,
            network=requirement.network,
            resource=requirement.resource or None,
            reference=payload.payload_id,
            success=result.valid,
            reason=result.reason,
        )
