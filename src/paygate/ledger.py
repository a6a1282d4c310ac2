"""
Ledger client boundary.

Chain execution is opaque to paygate: a LedgerClient answers "does this proof
exist, and what does it carry?" and performs the settlement action.
InMemoryLedger is the development ledger used by the CLI demo and the tests.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar

from eth_utils import keccak

from .errors import LedgerRejectedError, NetworkError
from .models import PaymentPayload, PaymentRequirement, SettlementResult, SettlementStatus
from .payload import recover_payer

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProofCheck:
    """What the ledger knows about the proof a payload references."""

    found: bool
    succeeded: bool = False
    value: Optional[str] = None
    recipient: Optional[str] = None
    token: Optional[str] = None
    ledger_reference: Optional[str] = None
    confirmations: int = 0
    block_number: Optional[int] = None


class LedgerClient(Protocol):
    def check_proof(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> ProofCheck: ...

    def submit_settlement(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> SettlementResult: ...


def run_with_timeout(fn: Callable[..., T], timeout: Optional[float], *args: Any, **kwargs: Any) -> T:
    """Run a blocking ledger call, raising TimeoutError after ``timeout`` seconds."""
    if timeout is None:
        return fn(*args, **kwargs)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="paygate-ledger")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        raise TimeoutError(f"Ledger call exceeded {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)


@dataclass
class Transfer:
    tx_hash: str
    sender: str
    recipient: str
    token: str
    value: str
    succeeded: bool
    block_number: int


class InMemoryLedger:
    """
    Process-local ledger.

    Proofs are either a recorded transfer (payload carries ``txHash``) or the
    payer's EIP-712 signature alone. Settlement is idempotent per payload and
    a transfer can back at most one settlement.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.outage = False
        self.settlement_actions = 0
        self._block = 0
        self._transfers: dict[str, Transfer] = {}
        self._settlements: dict[str, SettlementResult] = {}
        self._spent_transfers: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def block_number(self) -> int:
        return self._block

    def record_transfer(
        self,
        tx_hash: str,
        sender: str,
        recipient: str,
        token: str,
        value: str,
        succeeded: bool = True,
    ) -> Transfer:
        with self._lock:
            self._block += 1
            transfer = Transfer(
                tx_hash=tx_hash.lower(),
                sender=sender,
                recipient=recipient,
                token=token,
                value=str(value),
                succeeded=succeeded,
                block_number=self._block,
            )
            self._transfers[transfer.tx_hash] = transfer
        return transfer

    def _simulate_io(self) -> None:
        if self.outage:
            raise NetworkError("Ledger unreachable")
        if self.latency:
            time.sleep(self.latency)

    def check_proof(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> ProofCheck:
        self._simulate_io()

        signer = recover_payer(payload)
        if signer is None:
            return ProofCheck(found=False)
        if signer.lower() != payload.payer.lower():
            logger.info("Signature recovered %s, payload claims %s", signer, payload.payer)
            return ProofCheck(found=True, succeeded=False)

        if not payload.tx_hash:
            return ProofCheck(
                found=True,
                succeeded=True,
                value=payload.amount,
                recipient=payload.payee,
                token=payload.token,
            )

        with self._lock:
            transfer = self._transfers.get(payload.tx_hash.lower())
            head = self._block
        if transfer is None:
            return ProofCheck(found=False)
        return ProofCheck(
            found=True,
            succeeded=transfer.succeeded,
            value=transfer.value,
            recipient=transfer.recipient,
            token=transfer.token,
            ledger_reference=transfer.tx_hash,
            confirmations=head - transfer.block_number + 1,
            block_number=transfer.block_number,
        )

    def submit_settlement(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        timeout: Optional[float] = None,
    ) -> SettlementResult:
        self._simulate_io()

        payload_id = payload.payload_id
        with self._lock:
            prior = self._settlements.get(payload_id)
            if prior is not None:
                return prior

            if payload.tx_hash:
                tx_hash = payload.tx_hash.lower()
                transfer = self._transfers.get(tx_hash)
                if transfer is None or not transfer.succeeded:
                    raise LedgerRejectedError(f"Transfer {tx_hash} not settleable")
                if tx_hash in self._spent_transfers:
                    raise LedgerRejectedError(f"Transfer {tx_hash} already settled")
                self._spent_transfers[tx_hash] = payload_id

            self._block += 1
            if payload.tx_hash:
                reference = payload.tx_hash.lower()
            else:
                reference = "0x" + keccak(text=f"{payload_id}:{self._block}").hex()

            result = SettlementResult(
                success=True,
                ledger_reference=reference,
                block_number=self._block,
                status=SettlementStatus.CONFIRMED.value,
            )
            self._settlements[payload_id] = result
            self.settlement_actions += 1

        logger.info("Settled payload %s at block %d", payload_id[:12], result.block_number)
        return result
