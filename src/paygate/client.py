"""
Paying HTTP client.

Requests a resource, answers a 402 challenge with a signed payload and
resubmits. Only the paid resubmission is retried, always with the same
payload, so a retry can never cause a second charge.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

import httpx

from .errors import PaygateError, ValidationError
from .headers import (
    PAYMENT_HEADER,
    RECEIPT_HEADER,
    decode_receipt_header,
    encode_payment_header,
)
from .models import SUPPORTED_SCHEMES, PaymentRequirement, parse_challenge
from .money import parse_amount
from .networks import is_supported_network
from .payload import EthAccountSigner, PayloadBuilder, PaymentSigner

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (502, 503)


@dataclass
class PaymentResult:
    success: bool
    status_code: Optional[int] = None
    body: Any = field(default=None, repr=False)
    receipt: Optional[dict] = None
    requirement: Optional[PaymentRequirement] = None
    payload_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status_code": self.status_code,
            "receipt": self.receipt,
            "requirement": self.requirement.to_dict() if self.requirement else None,
            "payload_id": self.payload_id,
            "reason": self.reason,
            "error": self.error,
            "attempts": self.attempts,
        }


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _rejection_reason(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("reason")
    return None


class PaymentClient:
    """Pays for 402-protected resources within a local policy."""

    def __init__(
        self,
        signer: PaymentSigner,
        builder: Optional[PayloadBuilder] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        allowed_networks: Optional[Sequence[str]] = None,
        allowed_payees: Optional[Sequence[str]] = None,
        max_amount: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.signer = signer
        self.builder = builder or PayloadBuilder()
        self.allowed_networks = list(allowed_networks) if allowed_networks else None
        self.allowed_payees = [p.lower() for p in allowed_payees] if allowed_payees else None
        self.max_amount = parse_amount(max_amount) if max_amount is not None else None
        self._sleep = sleep
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_private_key(cls, private_key: str, **kwargs: Any) -> PaymentClient:
        return cls(EthAccountSigner.from_private_key(private_key), **kwargs)

    @property
    def address(self) -> str:
        return self.signer.address

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> PaymentClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def select_requirement(
        self,
        requirements: Sequence[PaymentRequirement],
        max_amount: Optional[Any] = None,
    ) -> PaymentRequirement:
        """Cheapest acceptable requirement under the client's policy."""
        ceiling = self.max_amount
        if max_amount is not None:
            requested = parse_amount(max_amount)
            ceiling = requested if ceiling is None else min(ceiling, requested)

        first_error: Optional[str] = None
        acceptable: list[tuple[Decimal, PaymentRequirement]] = []
        for req in requirements:
            if req.scheme not in SUPPORTED_SCHEMES:
                first_error = first_error or f"Scheme {req.scheme} not supported"
                continue
            if not is_supported_network(req.network):
                first_error = first_error or f"Network {req.network} not supported"
                continue
            if self.allowed_networks and req.network not in self.allowed_networks:
                first_error = first_error or f"Network {req.network} not allowed"
                continue
            if self.allowed_payees and req.payee.lower() not in self.allowed_payees:
                first_error = first_error or f"Payee {req.payee} not allowed"
                continue
            try:
                amount = parse_amount(req.amount)
            except ValidationError:
                first_error = first_error or f"Unparseable amount {req.amount!r}"
                continue
            if ceiling is not None and amount > ceiling:
                first_error = first_error or f"Amount {amount} exceeds approved max {ceiling}"
                continue
            acceptable.append((amount, req))

        if not acceptable:
            raise ValidationError(
                first_error or "No acceptable payment requirement", reason="no_acceptable_requirement"
            )
        return min(acceptable, key=lambda pair: pair[0])[1]

    def pay(
        self,
        url: str,
        method: str = "GET",
        max_retries: int = 2,
        retry_delay: float = 1.0,
        max_amount: Optional[Any] = None,
        **kwargs: Any,
    ) -> PaymentResult:
        """Fetch ``url``, paying if challenged."""
        headers = dict(kwargs.pop("headers", {}) or {})
        try:
            response = self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            return PaymentResult(success=False, reason="network_error", error=f"{type(e).__name__}: {e}")

        if response.status_code != 402:
            return PaymentResult(
                success=response.is_success,
                status_code=response.status_code,
                body=_response_body(response),
                reason=None if response.is_success else "unexpected_status",
            )

        try:
            requirements = parse_challenge(response.json())
        except (ValueError, AttributeError, ValidationError) as e:
            return PaymentResult(
                success=False, status_code=402, reason="invalid_challenge", error=f"Malformed 402 body: {e}"
            )

        try:
            requirement = self.select_requirement(requirements, max_amount=max_amount)
            payload = self.builder.build(requirement, self.signer)
        except PaygateError as e:
            return PaymentResult(success=False, status_code=402, reason=e.reason, error=str(e))

        paid_headers = {**headers, PAYMENT_HEADER: encode_payment_header(payload)}
        last_error: Optional[str] = None
        for attempt in range(max_retries + 1):
            try:
                paid = self._http.request(method, url, headers=paid_headers, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < max_retries:
                    self._sleep(retry_delay * (attempt + 1))
                    continue
                break

            if paid.status_code in RETRYABLE_STATUS and attempt < max_retries:
                logger.warning(
                    "Paid request to %s returned %d (attempt %d/%d), retrying",
                    url,
                    paid.status_code,
                    attempt + 1,
                    max_retries + 1,
                )
                self._sleep(retry_delay * (attempt + 1))
                continue

            return self._paid_result(paid, requirement, payload.payload_id, attempt + 1)

        return PaymentResult(
            success=False,
            requirement=requirement,
            payload_id=payload.payload_id,
            reason="network_error",
            error=f"Failed after {max_retries + 1} attempts: {last_error}",
            attempts=max_retries + 1,
        )

    def _paid_result(
        self,
        response: httpx.Response,
        requirement: PaymentRequirement,
        payload_id: str,
        attempts: int,
    ) -> PaymentResult:
        body = _response_body(response)
        if not response.is_success:
            return PaymentResult(
                success=False,
                status_code=response.status_code,
                body=body,
                requirement=requirement,
                payload_id=payload_id,
                reason=_rejection_reason(body) or "payment_rejected",
                error=f"Payment rejected ({response.status_code})",
                attempts=attempts,
            )

        receipt = None
        raw_receipt = response.headers.get(RECEIPT_HEADER)
        if raw_receipt:
            try:
                receipt = decode_receipt_header(raw_receipt)
            except ValidationError as e:
                logger.warning("Unreadable settlement receipt from %s: %s", response.url, e)
        return PaymentResult(
            success=True,
            status_code=response.status_code,
            body=body,
            receipt=receipt,
            requirement=requirement,
            payload_id=payload_id,
            attempts=attempts,
        )
