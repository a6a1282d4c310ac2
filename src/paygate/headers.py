"""Base64 JSON header codecs for payment proofs and settlement receipts."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Mapping

from .errors import ValidationError
from .models import PaymentPayload, SettlementResult


PAYMENT_HEADER = "X-PAYMENT"
RECEIPT_HEADER = "X-PAYMENT-RESPONSE"


def _encode(obj: Mapping[str, Any]) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _decode(value: str) -> dict:
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Malformed header: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("Header must carry a JSON object")
    return decoded


def encode_payment_header(payload: PaymentPayload) -> str:
    return _encode(payload.to_dict())


def decode_payment_header(value: str) -> PaymentPayload:
    return PaymentPayload.from_dict(_decode(value))


def encode_receipt_header(result: SettlementResult) -> str:
    return _encode(result.receipt())


def decode_receipt_header(value: str) -> dict:
    return _decode(value)

