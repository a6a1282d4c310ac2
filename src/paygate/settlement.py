"""
Settlement with retry.

The coordinator re-verifies, then submits the settlement action to the
ledger. Transient failures are retried under a RetryPolicy; client-class
rejections stop after one attempt. Settles of the same payload are
serialized and a successful result is replayed on resubmission.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import TRANSIENT_ERRORS, PaygateError, TransientFacilitatorError
from .ledger import LedgerClient, run_with_timeout
from .models import PaymentPayload, PaymentRequirement, SettlementResult, SettlementStatus
from .verification import VerificationEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

    def delay(self, attempt: int) -> float:
        """Pause after the given (1-based) failed attempt."""
        return self.base_delay * attempt


def _reason_of(error: BaseException) -> str:
    if isinstance(error, PaygateError):
        return error.reason
    if isinstance(error, TimeoutError):
        return "timeout"
    return "error"


class SettlementCoordinator:
    def __init__(
        self,
        engine: VerificationEngine,
        ledger: Optional[LedgerClient] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        default_timeout: Optional[float] = None,
        audit: Optional[AuditTrail] = None,
        lock_stripes: int = 64,
    ):
        self.engine = engine
        self.ledger = ledger or engine.ledger
        self.policy = policy or RetryPolicy()
        self.default_timeout = default_timeout
        self.audit = audit
        self._sleep = sleep
        self._results: dict[str, SettlementResult] = {}
        # Fixed-size stripe table keyed by payload id hash.
        self._locks = [threading.Lock() for _ in range(lock_stripes)]

    def _lock_for(self, payload_id: str) -> threading.Lock:
        return self._locks[hash(payload_id) % len(self._locks)]

    def settled(self, payload_id: str) -> Optional[SettlementResult]:
        return self._results.get(payload_id)

    def settle(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> SettlementResult:
        payload_id = payload.payload_id
        with self._lock_for(payload_id):
            prior = self._results.get(payload_id)
            if prior is not None:
                logger.info("Payload %s already settled, replaying result", payload_id[:12])
                return prior

            result = self._settle(payload, requirement, timeout if timeout is not None else self.default_timeout)
            if result.success:
                self._results[payload_id] = result
        self._log(payload, requirement, result)
        return result

    def _settle(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float],
    ) -> SettlementResult:
        verified = False
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                if not verified:
                    verification = self.engine.verify(payload, requirement, timeout=timeout)
                    if verification.retryable:
                        raise TransientFacilitatorError(f"Verification unavailable: {verification.reason}")
                    if not verification.valid:
                        return SettlementResult(
                            success=False,
                            status=SettlementStatus.REJECTED.value,
                            reason=verification.reason,
                            attempts=attempt,
                        )
                    verified = True

                result = run_with_timeout(
                    self.ledger.submit_settlement, timeout, payload, requirement, timeout
                )
                if not result.success and not result.reason:
                    return replace(result, reason="settlement_failed", attempts=attempt)
                return replace(result, attempts=attempt)

            except TRANSIENT_ERRORS as e:
                last_error = e
                if attempt < self.policy.max_attempts:
                    delay = self.policy.delay(attempt)
                    logger.warning(
                        "Settlement attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt,
                        self.policy.max_attempts,
                        e,
                        delay,
                    )
                    self._sleep(delay)
            except PaygateError as e:
                logger.warning("Ledger rejected settlement (attempt %d): %s", attempt, e)
                return SettlementResult(
                    success=False,
                    status=SettlementStatus.REJECTED.value,
                    reason="settlement_failed",
                    error=str(e),
                    attempts=attempt,
                )

        logger.warning("Settlement gave up after %d attempts: %s", self.policy.max_attempts, last_error)
        return SettlementResult(
            success=False,
            status=SettlementStatus.FAILED.value,
            reason=_reason_of(last_error) if last_error else "settlement_failed",
            error=f"{type(last_error).__name__}: {last_error}" if last_error else None,
            retryable=True,
            attempts=self.policy.max_attempts,
        )

    def _log(self, payload: PaymentPayload, requirement: PaymentRequirement, result: SettlementResult) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.SETTLEMENT_COMPLETED if result.success else EventType.SETTLEMENT_FAILED,
            payer=payload.payer,
            payee=requirement.payee,
            amount=requirement.amount,
            token=requirement.token,
            network=requirement.network,
            resource=requirement.resource or None,
            reference=result.ledger_reference or payload.payload_id,
            success=result.success,
            reason=result.reason,
            details={"attempts": result.attempts} if result.attempts else None,
        )
