"""
Paygate error types.

Each failure mode of the payment flow has its own exception so callers can
react precisely: reject, retry, wait for a spending window to reset, or
report the facilitator as unavailable. Every error carries a short
machine-readable ``reason`` code that is safe to surface to clients.
"""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional


class PaygateError(Exception):
    """Base error for all Paygate operations."""

    reason = "error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        if reason is not None:
            self.reason = reason
        super().__init__(message or self.reason)


# Never retried
class ValidationError(PaygateError):
    """A requirement or payload field is missing, malformed, or mismatched."""

    reason = "invalid_payment"


class ExpiredRequirementError(PaygateError):
    """The payment requirement is past its expiry."""

    reason = "requirement_expired"


class UnsupportedSchemeError(PaygateError):
    """The payment scheme is not implemented."""

    reason = "unsupported_scheme"

    def __init__(self, scheme: str):
        self.scheme = scheme
        super().__init__(f"Unsupported payment scheme: {scheme}")


class UnsupportedNetworkError(ValidationError):
    """The network is not in the registry."""

    reason = "unsupported_network"

    def __init__(self, network: str):
        self.network = network
        super().__init__(f"Unsupported network: {network}")


class SpendingLimitExceeded(PaygateError):
    """The spending guard refused the amount."""

    reason = "spending_limit_exceeded"

    def __init__(self, message: str, ceiling: str = "", amount: Optional[str] = None):
        self.ceiling = ceiling
        self.amount = amount
        super().__init__(message)


# Retried by the settlement coordinator
class NetworkError(PaygateError):
    """Network-level failure reaching the facilitator or ledger."""

    reason = "network_error"


class TransientFacilitatorError(PaygateError):
    """Server-class failure that may succeed if retried."""

    reason = "facilitator_unavailable"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# Surfaced, not retried
class SettlementFailure(PaygateError):
    """Settlement failed after the payload had been verified."""

    reason = "settlement_failed"


class LedgerRejectedError(SettlementFailure):
    """The ledger refused the settlement action (client-class failure)."""

    reason = "ledger_rejected"

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


class DiscoveryError(PaygateError):
    """The service registry could not be reached or returned garbage."""

    reason = "discovery_error"


class AuthError(PaygateError):
    """Facilitator credentials are missing or invalid."""

    reason = "unauthorized"


TRANSIENT_ERRORS = (NetworkError, TransientFacilitatorError, TimeoutError, FutureTimeoutError)
