"""
Resource-server side of the protocol.

The negotiator challenges unpaid requests, and for paid ones drives the
facilitator's verify then settle phases before releasing the resource. It
keeps no per-request state between calls: every issued requirement carries a
nonce of the form ``<expiry>.<random>.<hmac>`` and a resubmitted payload is
matched back to the requirement it answers by recomputing that HMAC.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from .audit import AuditTrail, EventType
from .discovery import Pricing, ServiceDescriptor
from .errors import PaygateError, ValidationError
from .facilitator import Facilitator
from .headers import RECEIPT_HEADER, decode_payment_header, encode_receipt_header
from .models import (
    SUPPORTED_SCHEMES,
    PaymentPayload,
    PaymentRequirement,
    Scheme,
    SettlementResult,
    challenge_body,
)
from .money import NATIVE_TOKEN, parse_amount
from .networks import get_network

logger = logging.getLogger(__name__)

DEFAULT_REQUIREMENT_TTL = 300

# Reason codes that may leave the resource server.
PUBLIC_REASONS = frozenset(
    {
        "invalid_payment",
        "unknown_requirement",
        "unsupported_scheme",
        "unsupported_network",
        "scheme_mismatch",
        "network_mismatch",
        "token_mismatch",
        "amount_mismatch",
        "payee_mismatch",
        "nonce_mismatch",
        "requirement_expired",
        "proof_absent",
        "proof_failed",
        "value_mismatch",
        "recipient_mismatch",
        "settlement_failed",
        "facilitator_unavailable",
    }
)


class RequestState(str, Enum):
    UNPAID = "unpaid"
    CHALLENGED = "challenged"
    SETTLING = "settling"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PriceOption:
    """One way to pay for a resource."""

    amount: str
    payee: str
    network: str
    token: str = NATIVE_TOKEN
    scheme: str = Scheme.EXACT.value

    def __post_init__(self):
        if self.scheme not in SUPPORTED_SCHEMES:
            raise ValidationError(f"Unsupported scheme in price option: {self.scheme}")
        parse_amount(self.amount)
        get_network(self.network)


@dataclass
class PricedResource:
    path: str
    options: list[PriceOption]
    content: Union[Any, Callable[[], Any]]
    description: str = ""
    category: str = ""
    name: str = ""

    def render(self) -> Any:
        return self.content() if callable(self.content) else self.content


@dataclass
class ResourceResponse:
    status_code: int
    body: Any
    state: RequestState
    headers: dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"status": self.status_code, "state": self.state.value, "body": self.body}
        if self.headers:
            d["headers"] = dict(self.headers)
        if self.reason:
            d["reason"] = self.reason
        return d


def _public_reason(reason: Optional[str], fallback: str) -> str:
    return reason if reason in PUBLIC_REASONS else fallback


class RequirementNegotiator:
    def __init__(
        self,
        facilitator: Facilitator,
        resources: Sequence[PricedResource] = (),
        secret: Optional[Union[bytes, str]] = None,
        requirement_ttl: int = DEFAULT_REQUIREMENT_TTL,
        clock: Callable[[], float] = time.time,
        audit: Optional[AuditTrail] = None,
    ):
        self.facilitator = facilitator
        self.requirement_ttl = requirement_ttl
        self.audit = audit
        self._clock = clock
        if secret is None:
            secret = secrets.token_bytes(32)
        self._secret = secret.encode() if isinstance(secret, str) else secret
        self._resources: dict[str, PricedResource] = {}
        for resource in resources:
            self.add_resource(resource)

    def add_resource(self, resource: PricedResource) -> None:
        if not resource.options:
            raise ValidationError(f"Resource {resource.path} has no price options")
        self._resources[resource.path] = resource

    def resource(self, path: str) -> Optional[PricedResource]:
        return self._resources.get(path)

    def catalog(self, base_url: str = "") -> list[ServiceDescriptor]:
        """Priced resources as registry entries."""
        entries = []
        for path, resource in self._resources.items():
            cheapest = min(resource.options, key=lambda o: parse_amount(o.amount))
            entries.append(
                ServiceDescriptor(
                    id=path.strip("/").replace("/", ".") or "root",
                    name=resource.name or path,
                    endpoint=f"{base_url.rstrip('/')}{path}",
                    category=resource.category,
                    pricing=Pricing(amount=cheapest.amount, token=cheapest.token, network=cheapest.network),
                    networks=tuple(dict.fromkeys(o.network for o in resource.options)),
                    description=resource.description,
                )
            )
        return entries

    # Requirements

    def issue_requirements(self, path: str) -> list[PaymentRequirement]:
        resource = self._resources[path]
        expiry = int(self._clock()) + self.requirement_ttl
        requirements = []
        for option in resource.options:
            nonce_seed = secrets.token_hex(8)
            requirement = self._requirement(resource, option, expiry, "")
            requirements.append(requirement.reissue(nonce=self._nonce(requirement, nonce_seed)))
        return requirements

    def _requirement(
        self, resource: PricedResource, option: PriceOption, expiry: int, nonce: str
    ) -> PaymentRequirement:
        return PaymentRequirement(
            scheme=option.scheme,
            network=option.network,
            token=option.token,
            amount=option.amount,
            payee=option.payee,
            resource=resource.path,
            expiry=expiry,
            nonce=nonce or None,
            description=resource.description or None,
        )

    def _mac(self, requirement: PaymentRequirement, seed: str) -> str:
        message = "|".join(
            [
                requirement.resource,
                requirement.scheme,
                requirement.network,
                requirement.token.lower(),
                requirement.amount,
                requirement.payee.lower(),
                str(requirement.expiry),
                seed,
            ]
        )
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()

    def _nonce(self, requirement: PaymentRequirement, seed: str) -> str:
        return f"{requirement.expiry}.{seed}.{self._mac(requirement, seed)}"

    def match_requirement(self, path: str, payload: PaymentPayload) -> Optional[PaymentRequirement]:
        """Rebuild the requirement a payload answers, or None if we never issued it."""
        resource = self._resources.get(path)
        if resource is None:
            return None
        parts = payload.nonce.split(".")
        if len(parts) != 3 or not parts[0].isdigit():
            return None
        expiry, seed, mac = int(parts[0]), parts[1], parts[2]
        for option in resource.options:
            candidate = self._requirement(resource, option, expiry, "")
            if hmac.compare_digest(self._mac(candidate, seed), mac):
                return candidate.reissue(nonce=payload.nonce)
        return None

    # Request handling

    def request_resource(
        self,
        path: str,
        payment: Optional[Union[str, PaymentPayload]] = None,
    ) -> ResourceResponse:
        resource = self._resources.get(path)
        if resource is None:
            return ResourceResponse(404, {"error": "Not found"}, RequestState.REJECTED, reason="not_found")

        if not payment:
            return self._challenge(path)

        if isinstance(payment, PaymentPayload):
            payload = payment
        else:
            try:
                payload = decode_payment_header(payment)
            except ValidationError as e:
                logger.info("Malformed payment header for %s: %s", path, e)
                return self._challenge(path, reason="invalid_payment")

        requirement = self.match_requirement(path, payload)
        if requirement is None:
            return self._challenge(path, reason="unknown_requirement")

        return self._pay(resource, payload, requirement)

    def _challenge(self, path: str, reason: Optional[str] = None) -> ResourceResponse:
        requirements = self.issue_requirements(path)
        message = "Payment Required" if reason is None else f"Payment rejected: {reason}"
        body = challenge_body(requirements, message)
        if reason is not None:
            body["reason"] = reason
        if self.audit is not None:
            self.audit.log(
                EventType.CHALLENGE_ISSUED,
                resource=path,
                success=reason is None,
                reason=reason,
                details={"options": len(requirements)},
            )
        state = RequestState.CHALLENGED if reason is None else RequestState.REJECTED
        return ResourceResponse(402, body, state, reason=reason)

    def _unavailable(self, path: str, error: Any) -> ResourceResponse:
        logger.warning("Facilitator unavailable for %s: %s", path, error)
        return ResourceResponse(
            503,
            {"error": "Payment facilitator unavailable", "reason": "facilitator_unavailable"},
            RequestState.UNAVAILABLE,
            reason="facilitator_unavailable",
        )

    def _pay(
        self,
        resource: PricedResource,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
    ) -> ResourceResponse:
        path = resource.path
        # An already-settled payload is delivered again even after its requirement expires.
        settled = getattr(self.facilitator, "settled", None)
        prior = settled(payload.payload_id) if settled is not None else None
        if prior is not None and prior.success:
            logger.info("Replaying receipt for settled payload %s", payload.payload_id[:12])
            return self._deliver(resource, prior)

        try:
            verification = self.facilitator.verify(payload, requirement)
        except PaygateError as e:
            return self._unavailable(path, e)

        if not verification.valid:
            if verification.retryable:
                return self._unavailable(path, verification.reason)
            reason = _public_reason(verification.reason, "invalid_payment")
            logger.info("Payment for %s rejected: %s", path, reason)
            return self._challenge(path, reason=reason)

        # SETTLING
        try:
            settlement = self.facilitator.settle(payload, requirement)
        except PaygateError as e:
            return self._unavailable(path, e)

        if not settlement.success:
            if settlement.retryable:
                return self._unavailable(path, settlement.reason)
            logger.info("Settlement for %s failed: %s", path, settlement.reason)
            return self._challenge(path, reason="settlement_failed")

        return self._deliver(resource, settlement)

    def _deliver(self, resource: PricedResource, settlement: SettlementResult) -> ResourceResponse:
        return ResourceResponse(
            200,
            resource.render(),
            RequestState.DELIVERED,
            headers={RECEIPT_HEADER: encode_receipt_header(settlement)},
        )
