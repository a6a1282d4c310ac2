"""
Paygate: pay-per-request HTTP payments.

Resource server challenges → client pays → facilitator verifies and settles
→ resource is released with a settlement receipt.
"""

__version__ = "0.1.0"

from .errors import (
    AuthError,
    DiscoveryError,
    ExpiredRequirementError,
    LedgerRejectedError,
    NetworkError,
    PaygateError,
    SettlementFailure,
    SpendingLimitExceeded,
    TransientFacilitatorError,
    UnsupportedNetworkError,
    UnsupportedSchemeError,
    ValidationError,
)
from .models import (
    PaymentPayload,
    PaymentRequirement,
    Scheme,
    SettlementResult,
    SettlementStatus,
    VerificationResult,
)
from .networks import NETWORKS, NetworkConfig, TokenConfig, get_network
from .spending import DEFAULT_SPENDING_LIMITS, SpendingGuard, SpendingLimit
from .payload import EthAccountSigner, PayloadBuilder
from .ledger import InMemoryLedger, LedgerClient, ProofCheck
from .verification import VerificationEngine
from .settlement import RetryPolicy, SettlementCoordinator
from .facilitator import FacilitatorClient, LocalFacilitator, create_facilitator_app
from .negotiator import PriceOption, PricedResource, RequestState, RequirementNegotiator
from .discovery import CachePolicy, DiscoveryCache, RegistryClient, ServiceDescriptor
from .client import PaymentClient, PaymentResult
from .audit import AuditChainError, AuditTrail, EventType

__all__ = [
    "PaygateError", "ValidationError", "ExpiredRequirementError", "UnsupportedSchemeError",
    "SpendingLimitExceeded", "NetworkError", "TransientFacilitatorError", "LedgerRejectedError",
    "SettlementFailure", "DiscoveryError", "AuthError", "UnsupportedNetworkError",
    "NETWORKS", "NetworkConfig", "TokenConfig", "get_network",
    "PaymentRequirement", "PaymentPayload", "Scheme", "VerificationResult",
    "SettlementResult", "SettlementStatus",
    "SpendingGuard", "SpendingLimit", "DEFAULT_SPENDING_LIMITS",
    "PayloadBuilder", "EthAccountSigner",
    "LedgerClient", "InMemoryLedger", "ProofCheck",
    "VerificationEngine", "SettlementCoordinator", "RetryPolicy",
    "LocalFacilitator", "FacilitatorClient", "create_facilitator_app",
    "RequirementNegotiator", "PricedResource", "PriceOption", "RequestState",
    "DiscoveryCache", "CachePolicy", "RegistryClient", "ServiceDescriptor",
    "PaymentClient", "PaymentResult",
    "AuditTrail", "AuditChainError", "EventType",
]
