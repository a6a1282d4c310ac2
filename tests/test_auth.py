"""Tests for facilitator JWT and API key authentication."""

import base64
import time

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from fastapi.testclient import TestClient

from paygate.auth import (
    KEY_ID_ENV,
    KEY_SECRET_ENV,
    ApiKeyVerifier,
    JWTAuth,
    JWTVerifier,
    load_facilitator_credentials,
    parse_private_key,
    request_uri,
)
from paygate.errors import AuthError
from paygate.facilitator import FacilitatorClient, LocalFacilitator, create_facilitator_app
from paygate.ledger import InMemoryLedger
from paygate.payload import PayloadBuilder
from paygate.verification import VerificationEngine

URI = "POST facilitator.test/verify"


@pytest.fixture
def ec_keys():
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def ed_keys():
    key = ed25519.Ed25519PrivateKey.generate()
    raw_private = key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    raw_public = key.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return (
        base64.b64encode(raw_private + raw_public).decode(),
        base64.b64encode(raw_public).decode(),
    )


def test_request_uri():
    assert request_uri("post", "api.example.com", None, "/verify") == "POST api.example.com/verify"
    assert request_uri("GET", "localhost", 8402, "/health") == "GET localhost:8402/health"


class TestKeys:
    def test_pem_is_es256(self, ec_keys):
        _, algorithm = parse_private_key(ec_keys[0])
        assert algorithm == "ES256"

    def test_escaped_newlines(self, ec_keys):
        _, algorithm = parse_private_key(ec_keys[0].replace("\n", "\\n"))
        assert algorithm == "ES256"

    def test_base64_is_eddsa(self, ed_keys):
        _, algorithm = parse_private_key(ed_keys[0])
        assert algorithm == "EdDSA"

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_private_key("not-a-key")


class TestJWT:
    def test_es256_round_trip(self, ec_keys):
        token = JWTAuth("key-1", ec_keys[0]).token_for(URI)
        verifier = JWTVerifier({"key-1": ec_keys[1]})
        assert verifier.verify_request("POST", URI, f"Bearer {token}") == "key-1"

        header = jwt.get_unverified_header(token)
        assert header["kid"] == "key-1"
        assert len(header["nonce"]) == 16

    def test_eddsa_round_trip(self, ed_keys):
        token = JWTAuth("key-2", ed_keys[0]).token_for(URI)
        verifier = JWTVerifier({"key-2": ed_keys[1]})
        assert verifier.verify_request("POST", URI, f"Bearer {token}") == "key-2"

    def test_token_scoped_to_one_uri(self, ec_keys):
        token = JWTAuth("key-1", ec_keys[0]).token_for(URI)
        verifier = JWTVerifier({"key-1": ec_keys[1]})
        with pytest.raises(AuthError, match="not scoped"):
            verifier.verify_request("POST", "POST facilitator.test/settle", f"Bearer {token}")

    def test_expired_token(self, ec_keys):
        old = JWTAuth("key-1", ec_keys[0], clock=lambda: time.time() - 1000).token_for(URI)
        verifier = JWTVerifier({"key-1": ec_keys[1]})
        with pytest.raises(AuthError):
            verifier.verify_request("POST", URI, f"Bearer {old}")

    def test_unknown_kid(self, ec_keys):
        token = JWTAuth("someone-else", ec_keys[0]).token_for(URI)
        with pytest.raises(AuthError, match="Unknown key id"):
            JWTVerifier({"key-1": ec_keys[1]}).verify_request("POST", URI, f"Bearer {token}")

    def test_wrong_key(self, ec_keys):
        other = ec.generate_private_key(ec.SECP256R1()).public_key()
        token = JWTAuth("key-1", ec_keys[0]).token_for(URI)
        with pytest.raises(AuthError):
            JWTVerifier({"key-1": other}).verify_request("POST", URI, f"Bearer {token}")

    def test_missing_header(self, ec_keys):
        with pytest.raises(AuthError):
            JWTVerifier({"key-1": ec_keys[1]}).verify_request("POST", URI, None)


class TestCredentials:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv(KEY_ID_ENV, "kid")
        monkeypatch.setenv(KEY_SECRET_ENV, "secret")
        credentials = load_facilitator_credentials()
        assert credentials.key_id == "kid"
        assert credentials.key_secret == "secret"

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setenv(KEY_ID_ENV, "env-kid")
        monkeypatch.setenv(KEY_SECRET_ENV, "env-secret")
        assert load_facilitator_credentials(key_id="arg-kid").key_id == "arg-kid"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv(KEY_ID_ENV, raising=False)
        monkeypatch.delenv(KEY_SECRET_ENV, raising=False)
        with pytest.raises(AuthError):
            load_facilitator_credentials()

    def test_api_key_verifier(self):
        verifier = ApiKeyVerifier({"ops": "s3cret"})
        assert verifier.verify_request("POST", URI, "Bearer s3cret") == "ops"
        with pytest.raises(AuthError):
            verifier.verify_request("POST", URI, "Bearer nope")


def test_jwt_through_facilitator_app(ec_keys, requirement, signer, clock):
    engine = VerificationEngine(InMemoryLedger(), clock=clock)
    app = create_facilitator_app(LocalFacilitator(engine), verifier=JWTVerifier({"key-1": ec_keys[1]}))
    http = TestClient(app)
    payload = PayloadBuilder(clock=clock).build(requirement, signer)

    client = FacilitatorClient("http://testserver", http_client=http, auth=JWTAuth("key-1", ec_keys[0]))
    assert client.verify(payload, requirement).valid

    unauthenticated = FacilitatorClient("http://testserver", http_client=http)
    with pytest.raises(AuthError):
        unauthenticated.verify(payload, requirement)
