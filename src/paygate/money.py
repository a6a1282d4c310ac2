"""Amount helpers for decimal strings expressed in token base units."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from .errors import ValidationError


NATIVE_TOKEN = "native"

_DECIMAL_RE = re.compile(r"^\d+(\.\d+)?$")


def parse_amount(value: Decimal | int | float | str) -> Decimal:
    """Parse a non-negative amount; strings must be plain decimal literals."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, str):
        if not _DECIMAL_RE.match(value.strip()):
            raise ValidationError(f"Invalid amount: {value!r}")
        value = value.strip()
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not dec.is_finite() or dec < 0:
        raise ValidationError(f"Invalid amount: {value!r}")
    return dec

