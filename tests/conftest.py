"""Shared fixtures: a controllable clock, accounts, and a standard requirement."""

import pytest
from eth_account import Account

from paygate.models import PaymentRequirement
from paygate.payload import EthAccountSigner


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def signer(payer):
    return EthAccountSigner(payer)


@pytest.fixture
def payee():
    return Account.create().address


@pytest.fixture
def requirement(payee, clock):
    return PaymentRequirement(
        scheme="exact",
        network="base-sepolia",
        token="native",
        amount="1000",
        payee=payee,
        resource="/weather",
        expiry=int(clock()) + 300,
        nonce="nonce-1",
    )
