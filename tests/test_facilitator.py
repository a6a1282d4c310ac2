"""Tests for the facilitator service, its HTTP client, and API key auth."""

import httpx
import pytest
from fastapi.testclient import TestClient

from paygate.auth import ApiKeyAuth, ApiKeyVerifier
from paygate.errors import (
    AuthError,
    NetworkError,
    TransientFacilitatorError,
    UnsupportedNetworkError,
    ValidationError,
)
from paygate.facilitator import (
    FacilitatorClient,
    LocalFacilitator,
    create_facilitator_app,
    facilitator_request,
    parse_facilitator_request,
)
from paygate.ledger import InMemoryLedger
from paygate.models import SettlementStatus
from paygate.payload import PayloadBuilder
from paygate.settlement import RetryPolicy, SettlementCoordinator
from paygate.verification import VerificationEngine


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def facilitator(ledger, clock):
    engine = VerificationEngine(ledger, clock=clock)
    coordinator = SettlementCoordinator(
        engine, policy=RetryPolicy(max_attempts=2, base_delay=0), sleep=lambda s: None
    )
    return LocalFacilitator(engine, coordinator, networks=["base-sepolia"])


@pytest.fixture
def app_client(facilitator):
    return TestClient(create_facilitator_app(facilitator))


@pytest.fixture
def payload(requirement, signer, clock):
    return PayloadBuilder(clock=clock).build(requirement, signer)


class TestRequestBodies:
    def test_round_trip(self, payload, requirement):
        parsed_payload, parsed_requirement = parse_facilitator_request(
            facilitator_request(payload, requirement)
        )
        assert parsed_payload == payload
        assert parsed_requirement == requirement

    def test_accepts_alternate_field_names(self, payload, requirement):
        body = {"paymentPayload": payload.to_dict(), "paymentDetails": requirement.to_dict()}
        parsed_payload, _ = parse_facilitator_request(body)
        assert parsed_payload.payload_id == payload.payload_id

    def test_missing_parts(self, payload):
        with pytest.raises(ValidationError):
            parse_facilitator_request({"payload": payload.to_dict()})


class TestFacilitatorApp:
    def test_root_and_health(self, app_client):
        root = app_client.get("/").json()
        assert root["networks"] == ["base-sepolia"]
        assert "exact" in root["schemes"]
        assert app_client.get("/health").json()["status"] == "healthy"

    def test_verify_valid(self, app_client, payload, requirement):
        response = app_client.post("/verify", json=facilitator_request(payload, requirement))
        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_verify_mismatch_is_400(self, app_client, payload, requirement):
        other = requirement.reissue(amount="2000")
        response = app_client.post("/verify", json=facilitator_request(payload, other))
        assert response.status_code == 400
        assert response.json() == {"valid": False, "reason": "amount_mismatch"}

    def test_verify_outage_is_503(self, app_client, ledger, payload, requirement):
        ledger.outage = True
        response = app_client.post("/verify", json=facilitator_request(payload, requirement))
        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_malformed_body_is_400(self, app_client):
        response = app_client.post("/verify", json={"payload": "nope"})
        assert response.status_code == 400
        assert response.json()["valid"] is False

    def test_settle_then_replay(self, app_client, ledger, payload, requirement):
        body = facilitator_request(payload, requirement)
        first = app_client.post("/settle", json=body)
        second = app_client.post("/settle", json=body)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.json()["ledgerReference"] == first.json()["ledgerReference"]
        assert ledger.settlement_actions == 1

    def test_settle_outage_is_503(self, app_client, ledger, payload, requirement):
        ledger.outage = True
        response = app_client.post("/settle", json=facilitator_request(payload, requirement))
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert response.json()["retryable"] is True


class TestFacilitatorClient:
    def test_against_app(self, facilitator, payload, requirement):
        http = TestClient(create_facilitator_app(facilitator))
        client = FacilitatorClient("http://testserver", http_client=http)

        assert client.health()["status"] == "healthy"
        assert client.verify(payload, requirement).valid
        settled = client.settle(payload, requirement)
        assert settled.success
        assert settled.block_number == 1

    def test_rejection_is_a_result_not_an_error(self, facilitator, payload, requirement):
        client = FacilitatorClient("http://testserver", http_client=TestClient(create_facilitator_app(facilitator)))
        result = client.verify(payload, requirement.reissue(amount="1"))
        assert not result.valid
        assert result.reason == "amount_mismatch"

    @pytest.mark.parametrize(
        "handler, error",
        [
            (lambda r: httpx.Response(502, text="bad gateway"), TransientFacilitatorError),
            (lambda r: httpx.Response(401, json={"detail": "unauthorized"}), AuthError),
            (lambda r: httpx.Response(200, text="not json"), ValidationError),
        ],
    )
    def test_error_mapping(self, handler, error, payload, requirement):
        client = FacilitatorClient(
            "https://facilitator.test", http_client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        with pytest.raises(error):
            client.verify(payload, requirement)

    def test_transport_error_is_network_error(self, payload, requirement):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = FacilitatorClient(
            "https://facilitator.test", http_client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        with pytest.raises(NetworkError):
            client.settle(payload, requirement)


class TestApiKeyAuth:
    @pytest.fixture
    def secured(self, facilitator):
        app = create_facilitator_app(facilitator, verifier=ApiKeyVerifier({"ops": "s3cret"}))
        return TestClient(app)

    def test_missing_key_is_401(self, secured, payload, requirement):
        response = secured.post("/verify", json=facilitator_request(payload, requirement))
        assert response.status_code == 401

    def test_wrong_key_is_401(self, secured, payload, requirement):
        response = secured.post(
            "/verify",
            json=facilitator_request(payload, requirement),
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    def test_health_stays_open(self, secured):
        assert secured.get("/health").status_code == 200

    def test_client_with_api_key(self, secured, payload, requirement):
        client = FacilitatorClient("http://testserver", http_client=secured, auth=ApiKeyAuth("s3cret"))
        assert client.verify(payload, requirement).valid

    def test_client_without_key_raises(self, secured, payload, requirement):
        client = FacilitatorClient("http://testserver", http_client=secured)
        with pytest.raises(AuthError):
            client.verify(payload, requirement)


class TestServedNetworks:
    def test_other_network_is_refused(self, facilitator, ledger, requirement, signer, clock):
        on_base = requirement.reissue(network="base")
        payload = PayloadBuilder(clock=clock).build(on_base, signer)

        verification = facilitator.verify(payload, on_base)
        settlement = facilitator.settle(payload, on_base)

        assert verification.reason == "unsupported_network"
        assert not settlement.success
        assert settlement.reason == "unsupported_network"
        assert settlement.status == SettlementStatus.REJECTED.value
        assert ledger.settlement_actions == 0

    def test_caip_ids_resolve_to_slugs(self, ledger, requirement, clock):
        local = LocalFacilitator(VerificationEngine(ledger, clock=clock), networks=["eip155:84532"])
        assert local.networks == ["base-sepolia"]
        assert local.serves(requirement.network)
        assert local.serves("eip155:84532")
        assert not local.serves("polygon")

    def test_unknown_network_in_config(self, ledger):
        with pytest.raises(UnsupportedNetworkError):
            LocalFacilitator(VerificationEngine(ledger), networks=["base-goerli"])

    def test_settled_lookup(self, facilitator, payload, requirement):
        assert facilitator.settled(payload.payload_id) is None
        result = facilitator.settle(payload, requirement)
        assert facilitator.settled(payload.payload_id) is result
