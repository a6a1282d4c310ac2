"""
Client-side spending limits.

Spend is tracked per (holder, token) in an epoch-aligned daily window. The
guard is an injectable object: every key has its own lock, so a
check-then-record for one key is atomic while different keys proceed in
parallel.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from .money import parse_amount

logger = logging.getLogger(__name__)

DAY_SECONDS = 86_400


@dataclass(frozen=True)
class SpendingLimit:
    """Ceilings in token base units. ``None`` means unconstrained."""

    per_transaction: Optional[Decimal] = None
    daily: Optional[Decimal] = None

    def __post_init__(self):
        if self.per_transaction is not None:
            object.__setattr__(self, "per_transaction", parse_amount(self.per_transaction))
        if self.daily is not None:
            object.__setattr__(self, "daily", parse_amount(self.daily))

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.per_transaction is not None:
            d["perTransaction"] = str(self.per_transaction)
        if self.daily is not None:
            d["daily"] = str(self.daily)
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> SpendingLimit:
        return cls(per_transaction=d.get("perTransaction"), daily=d.get("daily"))


# Base units of a 6-decimal token (e.g. 0.01 / 0.1 USDC for CONSERVATIVE).
DEFAULT_SPENDING_LIMITS = {
    "conservative": SpendingLimit(per_transaction=10_000, daily=100_000),
    "moderate": SpendingLimit(per_transaction=100_000, daily=1_000_000),
    "liberal": SpendingLimit(per_transaction=1_000_000, daily=10_000_000),
}


@dataclass
class SpentLedgerEntry:
    """Accumulated spend for one (holder, token) in one daily window."""

    amount: Decimal
    window_start: int


@dataclass
class Allowance:
    per_transaction: Optional[Decimal] = None
    daily: Optional[Decimal] = None
    spent: Decimal = Decimal(0)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"spent": str(self.spent)}
        if self.per_transaction is not None:
            d["perTransaction"] = str(self.per_transaction)
        if self.daily is not None:
            d["daily"] = str(self.daily)
        return d


def window_start(now: float) -> int:
    return int(now // DAY_SECONDS) * DAY_SECONDS


def _key(holder: str, token: str) -> tuple[str, str]:
    return holder.strip().lower(), token.strip().lower()


class SpendingGuard:
    """Tracks spend and enforces per-transaction and daily ceilings."""

    def __init__(
        self,
        limits: Optional[Mapping[str, SpendingLimit]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._limits: dict[tuple[Optional[str], str], SpendingLimit] = {}
        self._entries: dict[tuple[str, str], SpentLedgerEntry] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        for token, limit in (limits or {}).items():
            self.set_limit(token, limit)

    def set_limit(self, token: str, limit: SpendingLimit, holder: Optional[str] = None) -> None:
        """Configure a ceiling for a token, optionally for one holder only."""
        holder_key = holder.strip().lower() if holder else None
        self._limits[(holder_key, token.strip().lower())] = limit

    def get_limit(self, holder: str, token: str) -> Optional[SpendingLimit]:
        holder_key, token_key = _key(holder, token)
        return self._limits.get((holder_key, token_key)) or self._limits.get((None, token_key))

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _current_spent(self, key: tuple[str, str], now: float) -> Decimal:
        # Caller holds the key lock.
        entry = self._entries.get(key)
        bucket = window_start(now)
        if entry is None or entry.window_start < bucket:
            return Decimal(0)
        return entry.amount

    def _add(self, key: tuple[str, str], amount: Decimal, now: float) -> None:
        # Caller holds the key lock.
        bucket = window_start(now)
        spent = self._current_spent(key, now)
        self._entries[key] = SpentLedgerEntry(amount=spent + amount, window_start=bucket)

    def _evaluate(
        self,
        limit: Optional[SpendingLimit],
        amount: Decimal,
        spent: Decimal,
    ) -> tuple[bool, str, str]:
        if limit is None:
            return True, "No limit configured", ""

        if limit.per_transaction is not None and amount > limit.per_transaction:
            return False, (
                f"Amount {amount} exceeds per-transaction limit {limit.per_transaction}"
            ), "per_transaction"

        if limit.daily is not None and spent + amount > limit.daily:
            remaining = max(Decimal(0), limit.daily - spent)
            return False, (
                f"Amount {amount} exceeds remaining daily budget {remaining} "
                f"(spent {spent} of {limit.daily} today)"
            ), "daily"

        return True, "Within limits", ""

    def check(self, holder: str, token: str, amount: Decimal | int | str) -> bool:
        """Would ``amount`` fit within the holder's ceilings right now?"""
        allowed, _, _ = self.evaluate(holder, token, amount)
        return allowed

    def evaluate(
        self, holder: str, token: str, amount: Decimal | int | str
    ) -> tuple[bool, str, str]:
        """Like ``check`` but also returns the reason and the ceiling that failed."""
        value = parse_amount(amount)
        key = _key(holder, token)
        with self._lock_for(key):
            spent = self._current_spent(key, self._clock())
            return self._evaluate(self.get_limit(holder, token), value, spent)

    def record(self, holder: str, token: str, amount: Decimal | int | str) -> None:
        """Add ``amount`` to the holder's spend in the current window."""
        value = parse_amount(amount)
        key = _key(holder, token)
        with self._lock_for(key):
            self._add(key, value, self._clock())

    def reserve(
        self, holder: str, token: str, amount: Decimal | int | str
    ) -> tuple[bool, str, str]:
        """Atomically check and record. Returns (allowed, reason, ceiling)."""
        value = parse_amount(amount)
        key = _key(holder, token)
        with self._lock_for(key):
            now = self._clock()
            spent = self._current_spent(key, now)
            allowed, reason, ceiling = self._evaluate(self.get_limit(holder, token), value, spent)
            if allowed:
                self._add(key, value, now)
            else:
                logger.info("Spend denied for %s/%s: %s", key[0], key[1], reason)
            return allowed, reason, ceiling

    def remaining(self, holder: str, token: str) -> Allowance:
        key = _key(holder, token)
        limit = self.get_limit(holder, token)
        with self._lock_for(key):
            spent = self._current_spent(key, self._clock())
        if limit is None:
            return Allowance(spent=spent)
        daily = None
        if limit.daily is not None:
            daily = max(Decimal(0), limit.daily - spent)
        return Allowance(per_transaction=limit.per_transaction, daily=daily, spent=spent)
