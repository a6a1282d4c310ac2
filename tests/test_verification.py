"""Tests for payload verification."""

from dataclasses import replace

import pytest
from eth_account import Account

from paygate.ledger import InMemoryLedger, ProofCheck
from paygate.payload import PayloadBuilder
from paygate.verification import VerificationEngine, structural_mismatch


TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def engine(ledger, clock):
    return VerificationEngine(ledger, clock=clock)


@pytest.fixture
def payload(requirement, signer, clock):
    return PayloadBuilder(clock=clock).build(requirement, signer)


class TestStructuralChecks:
    def test_payload_from_requirement_is_valid(self, engine, payload, requirement):
        result = engine.verify(payload, requirement)
        assert result.valid
        assert result.reason is None

    @pytest.mark.parametrize(
        "field, value, reason",
        [
            ("amount", "1001", "amount_mismatch"),
            ("amount", "1000.0", "amount_mismatch"),
            ("token", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", "token_mismatch"),
            ("payee", "0x2222222222222222222222222222222222222222", "payee_mismatch"),
            ("network", "base", "network_mismatch"),
            ("scheme", "upto", "scheme_mismatch"),
            ("nonce", "nonce-2", "nonce_mismatch"),
        ],
    )
    def test_single_field_mutation_fails(self, engine, payload, requirement, field, value, reason):
        result = engine.verify(replace(payload, **{field: value}), requirement)
        assert not result.valid
        assert result.reason == reason
        assert not result.retryable

    def test_token_and_payee_compare_case_insensitively(self, engine, payload, requirement):
        mixed = replace(payload, token="NATIVE", payee=payload.payee.lower())
        assert structural_mismatch(mixed, requirement) is None

    def test_unsupported_requirement_scheme(self, payload, requirement):
        assert structural_mismatch(payload, requirement.reissue(scheme="stream")) == "unsupported_scheme"

    def test_unregistered_requirement_network(self, engine, payload, requirement):
        unknown = requirement.reissue(network="base-goerli")
        assert structural_mismatch(replace(payload, network="base-goerli"), unknown) == "unsupported_network"
        assert engine.verify(payload, unknown).reason == "unsupported_network"

    def test_expired_requirement(self, engine, payload, requirement, clock):
        clock.advance(301)
        result = engine.verify(payload, requirement)
        assert not result.valid
        assert result.reason == "requirement_expired"

    def test_verify_is_idempotent(self, engine, payload, requirement):
        first = engine.verify(payload, requirement)
        second = engine.verify(payload, requirement)
        assert first == second

        bad = replace(payload, amount="5")
        assert engine.verify(bad, requirement) == engine.verify(bad, requirement)


class TestProofChecks:
    def test_signature_from_someone_else(self, engine, payload, requirement):
        impostor = Account.create().address
        result = engine.verify(replace(payload, payer=impostor), requirement)
        assert not result.valid
        assert result.reason == "proof_failed"

    def test_garbage_signature(self, engine, payload, requirement):
        result = engine.verify(replace(payload, signature="0xdead"), requirement)
        assert result.reason == "proof_absent"

    def test_transfer_proof(self, ledger, engine, requirement, signer, clock):
        ledger.record_transfer(TX_HASH, signer.address, requirement.payee, "native", "1000")
        ledger.record_transfer("0x" + "cd" * 32, signer.address, requirement.payee, "native", "1")
        payload = PayloadBuilder(clock=clock).build(requirement, signer, tx_hash=TX_HASH)

        result = engine.verify(payload, requirement)
        assert result.valid
        assert result.ledger_reference == TX_HASH
        assert result.confirmations == 2

    def test_unknown_transfer(self, engine, requirement, signer, clock):
        payload = PayloadBuilder(clock=clock).build(requirement, signer, tx_hash=TX_HASH)
        assert engine.verify(payload, requirement).reason == "proof_absent"

    def test_failed_transfer(self, ledger, engine, requirement, signer, clock):
        ledger.record_transfer(TX_HASH, signer.address, requirement.payee, "native", "1000", succeeded=False)
        payload = PayloadBuilder(clock=clock).build(requirement, signer, tx_hash=TX_HASH)
        assert engine.verify(payload, requirement).reason == "proof_failed"

    def test_transfer_value_mismatch(self, ledger, engine, requirement, signer, clock):
        ledger.record_transfer(TX_HASH, signer.address, requirement.payee, "native", "999")
        payload = PayloadBuilder(clock=clock).build(requirement, signer, tx_hash=TX_HASH)
        assert engine.verify(payload, requirement).reason == "value_mismatch"

    def test_transfer_recipient_mismatch(self, ledger, engine, requirement, signer, clock):
        other = Account.create().address
        ledger.record_transfer(TX_HASH, signer.address, other, "native", "1000")
        payload = PayloadBuilder(clock=clock).build(requirement, signer, tx_hash=TX_HASH)
        assert engine.verify(payload, requirement).reason == "recipient_mismatch"

    def test_upto_accepts_smaller_proven_value(self, ledger, engine, requirement, signer, clock):
        upto = requirement.reissue(scheme="upto")
        ledger.record_transfer(TX_HASH, signer.address, requirement.payee, "native", "400")
        payload = PayloadBuilder(clock=clock).build(upto, signer, tx_hash=TX_HASH)
        assert engine.verify(payload, upto).valid

    def test_ledger_outage_is_retryable(self, ledger, engine, payload, requirement):
        ledger.outage = True
        result = engine.verify(payload, requirement)
        assert not result.valid
        assert result.reason == "ledger_unavailable"
        assert result.retryable

    def test_ledger_timeout_is_retryable(self, payload, requirement, clock):
        engine = VerificationEngine(InMemoryLedger(latency=0.5), clock=clock)
        result = engine.verify(payload, requirement, timeout=0.05)
        assert result.reason == "ledger_unavailable"
        assert result.retryable

    def test_proof_fields_left_unset_are_not_compared(self, payload, requirement, clock):
        class BareLedger:
            def check_proof(self, payload, requirement, timeout=None):
                return ProofCheck(found=True, succeeded=True, ledger_reference="ref-1", confirmations=12)

            def submit_settlement(self, payload, requirement, timeout=None):
                raise AssertionError("verification must not settle")

        result = VerificationEngine(BareLedger(), clock=clock).verify(payload, requirement)
        assert result.valid
        assert result.ledger_reference == "ref-1"
        assert result.confirmations == 12
