"""End-to-end tests for the paying client against a resource server."""

import httpx
import pytest
from fastapi.testclient import TestClient

from paygate.client import PaymentClient
from paygate.errors import ValidationError
from paygate.facilitator import LocalFacilitator
from paygate.headers import PAYMENT_HEADER, RECEIPT_HEADER, decode_receipt_header, encode_payment_header
from paygate.ledger import InMemoryLedger
from paygate.models import challenge_body, parse_challenge
from paygate.negotiator import PriceOption, PricedResource, RequirementNegotiator
from paygate.payload import PayloadBuilder
from paygate.server import create_resource_app
from paygate.spending import SpendingGuard, SpendingLimit
from paygate.verification import VerificationEngine


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def server(ledger, clock, payee):
    facilitator = LocalFacilitator(VerificationEngine(ledger, clock=clock))
    negotiator = RequirementNegotiator(
        facilitator,
        resources=[
            PricedResource(
                path="/weather",
                options=[
                    PriceOption(amount="5000", payee=payee, network="base-sepolia"),
                    PriceOption(amount="1000", payee=payee, network="base-sepolia"),
                ],
                content={"forecast": "sunny"},
                description="Weather forecast",
                category="data",
            ),
        ],
        secret="test-secret",
        clock=clock,
    )
    return TestClient(create_resource_app(negotiator, base_url="http://testserver"))


def make_client(server, signer, clock, guard=None, **kwargs):
    return PaymentClient(
        signer,
        builder=PayloadBuilder(guard=guard, clock=clock),
        http_client=server,
        sleep=lambda s: None,
        **kwargs,
    )


class TestResourceServer:
    def test_unpaid_request_is_challenged(self, server):
        response = server.get("/weather")
        assert response.status_code == 402
        body = response.json()
        assert [r["amount"] for r in body["accepts"]] == ["5000", "1000"]
        assert response.headers["x-payment-required"] == "true"
        assert response.headers["x-supported-networks"] == "base-sepolia"

    def test_probe_and_catalog(self, server):
        assert server.head("/weather").status_code == 402
        assert server.head("/nothing").status_code == 404
        services = server.get("/catalog").json()["services"]
        assert services[0]["endpoint"] == "http://testserver/weather"
        assert services[0]["pricing"]["amount"] == "1000"

    def test_unknown_path(self, server):
        assert server.get("/nothing").status_code == 404

    def test_same_header_settles_once(self, server, ledger, signer, clock):
        requirement = parse_challenge(server.get("/weather").json())[1]
        payload = PayloadBuilder(clock=clock).build(requirement, signer)
        header = {PAYMENT_HEADER: encode_payment_header(payload)}

        first = server.get("/weather", headers=header)
        second = server.get("/weather", headers=header)

        assert first.status_code == second.status_code == 200
        assert first.headers[RECEIPT_HEADER] == second.headers[RECEIPT_HEADER]
        assert ledger.settlement_actions == 1

    def test_garbage_header_is_rechallenged(self, server):
        response = server.get("/weather", headers={PAYMENT_HEADER: "!!not-base64!!"})
        assert response.status_code == 402
        assert response.json()["reason"] == "invalid_payment"

    def test_ledger_outage_is_503(self, server, ledger, signer, clock):
        requirement = parse_challenge(server.get("/weather").json())[0]
        payload = PayloadBuilder(clock=clock).build(requirement, signer)
        ledger.outage = True
        response = server.get("/weather", headers={PAYMENT_HEADER: encode_payment_header(payload)})
        assert response.status_code == 503


class TestPaymentClient:
    def test_pays_cheapest_option(self, server, signer, clock):
        client = make_client(server, signer, clock)
        result = client.pay("http://testserver/weather")

        assert result.success
        assert result.status_code == 200
        assert result.body == {"forecast": "sunny"}
        assert result.requirement.amount == "1000"
        assert result.receipt["status"] == "confirmed"
        assert result.receipt["ledgerReference"].startswith("0x")
        assert result.attempts == 1

    def test_max_amount_blocks_payment(self, server, signer, clock):
        client = make_client(server, signer, clock, max_amount="500")
        result = client.pay("http://testserver/weather")
        assert not result.success
        assert result.status_code == 402
        assert result.reason == "no_acceptable_requirement"
        assert "exceeds approved max" in result.error

    def test_spending_limit_blocks_payment(self, server, ledger, signer, clock):
        guard = SpendingGuard({"native": SpendingLimit(per_transaction=1000, daily=1500)}, clock=clock)
        client = make_client(server, signer, clock, guard=guard)

        assert client.pay("http://testserver/weather").success
        second = client.pay("http://testserver/weather")

        assert not second.success
        assert second.reason == "spending_limit_exceeded"
        assert ledger.settlement_actions == 1

    def test_free_resource_passes_through(self, signer):
        http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"free": True})))
        result = PaymentClient(signer, http_client=http).pay("https://api.test/free")
        assert result.success
        assert result.body == {"free": True}
        assert result.payload_id is None

    def test_malformed_challenge(self, signer):
        http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(402, json={"accepts": []})))
        result = PaymentClient(signer, http_client=http).pay("https://api.test/x")
        assert not result.success
        assert result.reason == "invalid_challenge"

    def test_retries_paid_request_with_same_header(self, signer, clock, requirement):
        seen = []

        def handler(request):
            header = request.headers.get(PAYMENT_HEADER)
            if header is None:
                return httpx.Response(402, json=challenge_body([requirement]))
            seen.append(header)
            if len(seen) == 1:
                return httpx.Response(503, json={"reason": "facilitator_unavailable"})
            return httpx.Response(200, json={"ok": True}, headers={RECEIPT_HEADER: "e30="})

        sleeps = []
        client = PaymentClient(
            signer,
            builder=PayloadBuilder(clock=clock),
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=sleeps.append,
        )
        result = client.pay("https://api.test/weather", retry_delay=1.0)

        assert result.success
        assert result.attempts == 2
        assert len(seen) == 2 and seen[0] == seen[1]
        assert sleeps == [1.0]
        assert result.receipt == {}

    def test_gives_up_after_retries(self, signer, clock, requirement):
        def handler(request):
            if PAYMENT_HEADER.lower() not in {k.lower() for k in request.headers}:
                return httpx.Response(402, json=challenge_body([requirement]))
            return httpx.Response(503, json={"reason": "facilitator_unavailable"})

        sleeps = []
        client = PaymentClient(
            signer,
            builder=PayloadBuilder(clock=clock),
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=sleeps.append,
        )
        result = client.pay("https://api.test/weather", max_retries=2)

        assert not result.success
        assert result.status_code == 503
        assert result.reason == "facilitator_unavailable"
        assert sleeps == [1.0, 2.0]


class TestSelectRequirement:
    def test_filters(self, signer, requirement):
        client = PaymentClient(signer, allowed_networks=["base"], http_client=httpx.Client())
        with pytest.raises(ValidationError, match="not allowed"):
            client.select_requirement([requirement])

    def test_payee_allowlist_is_case_insensitive(self, signer, requirement):
        client = PaymentClient(signer, allowed_payees=[requirement.payee.upper()], http_client=httpx.Client())
        assert client.select_requirement([requirement]) == requirement

    def test_unknown_network_is_skipped(self, signer, requirement):
        unknown = requirement.reissue(network="base-goerli", amount="1")
        client = PaymentClient(signer, http_client=httpx.Client())
        assert client.select_requirement([unknown, requirement]) == requirement
        with pytest.raises(ValidationError, match="not supported"):
            client.select_requirement([unknown])

    def test_cheapest_wins(self, signer, requirement):
        cheap = requirement.reissue(amount="10")
        client = PaymentClient(signer, http_client=httpx.Client())
        assert client.select_requirement([requirement, cheap]) == cheap


def test_receipt_decodes(server, signer, clock):
    response = server.get("/weather")
    requirement = parse_challenge(response.json())[0]
    payload = PayloadBuilder(clock=clock).build(requirement, signer)
    paid = server.get("/weather", headers={PAYMENT_HEADER: encode_payment_header(payload)})
    receipt = decode_receipt_header(paid.headers[RECEIPT_HEADER])
    assert receipt["blockNumber"] == 1
