"""
Facilitator authentication.

Client side: httpx auth flows that attach either a static API key or a
short-lived JWT (ES256 or EdDSA) scoped to the exact ``METHOD host/path``
being called. Server side: verifiers that check the same headers, wired into
the facilitator app as a FastAPI dependency.
"""

from __future__ import annotations

import base64
import hmac
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Callable, Generator, Mapping, Optional, Protocol, Union

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from .errors import AuthError

logger = logging.getLogger(__name__)

FACILITATOR_AUDIENCE = ["paygate_facilitator"]
FACILITATOR_ISSUER = "paygate"

KEY_ID_ENV = "PAYGATE_FACILITATOR_KEY_ID"
KEY_SECRET_ENV = "PAYGATE_FACILITATOR_KEY_SECRET"

PrivateKey = Union[ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]
PublicKey = Union[ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey]


@dataclass(frozen=True)
class FacilitatorCredentials:
    key_id: str
    key_secret: str


def load_facilitator_credentials(
    *,
    key_id: Optional[str] = None,
    key_secret: Optional[str] = None,
) -> FacilitatorCredentials:
    """Resolve facilitator credentials from arguments or the environment."""
    resolved_id = key_id or os.getenv(KEY_ID_ENV)
    resolved_secret = key_secret or os.getenv(KEY_SECRET_ENV)
    if not resolved_id or not resolved_secret:
        raise AuthError(f"Facilitator credentials not found. Set {KEY_ID_ENV} and {KEY_SECRET_ENV}.")
    return FacilitatorCredentials(key_id=resolved_id, key_secret=resolved_secret)


def request_uri(method: str, host: str, port: Optional[int], path: str) -> str:
    """The scope string a JWT is issued for, e.g. ``POST api.example.com/verify``."""
    authority = f"{host}:{port}" if port else host
    return f"{method.upper()} {authority}{path}"


class ApiKeyAuth(httpx.Auth):
    """Static bearer key."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("API key is required")
        self._api_key = api_key

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._api_key}"
        yield request


class JWTAuth(httpx.Auth):
    """Signs a fresh JWT for every request, scoped to that request's URI."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        expires_in_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        if not key_id:
            raise ValueError("Key ID is required")
        if not key_secret:
            raise ValueError("Key secret is required")
        self._key_id = key_id
        self._private_key, self._algorithm = parse_private_key(key_secret)
        self._expires_in_seconds = expires_in_seconds
        self._clock = clock

    @classmethod
    def from_env(cls) -> JWTAuth:
        credentials = load_facilitator_credentials()
        return cls(credentials.key_id, credentials.key_secret)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        uri = request_uri(request.method, request.url.host, request.url.port, request.url.path)
        request.headers["Authorization"] = f"Bearer {self.token_for(uri)}"
        yield request

    def token_for(self, uri: str) -> str:
        now = int(self._clock())
        claims = {
            "sub": self._key_id,
            "iss": FACILITATOR_ISSUER,
            "aud": FACILITATOR_AUDIENCE,
            "nbf": now,
            "exp": now + self._expires_in_seconds,
            "uris": [uri],
        }
        return jwt.encode(
            claims,
            self._private_key,
            algorithm=self._algorithm,
            headers={
                "alg": self._algorithm,
                "kid": self._key_id,
                "typ": "JWT",
                "nonce": _nonce(),
            },
        )


class RequestVerifier(Protocol):
    def verify_request(self, method: str, uri: str, authorization: Optional[str]) -> str: ...


def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("Missing bearer token")
    return authorization[len("Bearer "):].strip()


class ApiKeyVerifier:
    """Accepts any of a fixed set of API keys. Returns the matching key's name."""

    def __init__(self, keys: Mapping[str, str]):
        self._keys = dict(keys)

    def verify_request(self, method: str, uri: str, authorization: Optional[str]) -> str:
        presented = _bearer(authorization)
        for name, key in self._keys.items():
            if hmac.compare_digest(presented.encode(), key.encode()):
                return name
        raise AuthError("Unknown API key")


class JWTVerifier:
    """Checks signature, audience, expiry and URI scope of facilitator JWTs."""

    def __init__(self, public_keys: Mapping[str, Union[PublicKey, str]], leeway: int = 5):
        self._keys: dict[str, tuple[PublicKey, str]] = {}
        for kid, key in public_keys.items():
            self._keys[kid] = parse_public_key(key) if isinstance(key, str) else (key, _algorithm_for(key))
        self._leeway = leeway

    def verify_request(self, method: str, uri: str, authorization: Optional[str]) -> str:
        token = _bearer(authorization)
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise AuthError(f"Malformed token: {exc}") from exc

        kid = header.get("kid")
        if kid not in self._keys:
            raise AuthError("Unknown key id")
        key, algorithm = self._keys[kid]

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=FACILITATOR_AUDIENCE,
                issuer=FACILITATOR_ISSUER,
                leeway=self._leeway,
                options={"require": ["exp", "nbf", "sub"]},
            )
        except jwt.PyJWTError as exc:
            raise AuthError(f"Invalid token: {exc}") from exc

        if claims.get("sub") != kid:
            raise AuthError("Token subject does not match key id")
        if uri not in (claims.get("uris") or []):
            raise AuthError(f"Token not scoped to {uri}")
        return kid


def _algorithm_for(key: Union[PrivateKey, PublicKey]) -> str:
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey)):
        return "EdDSA"
    return "ES256"


def parse_private_key(key_data: str) -> tuple[PrivateKey, str]:
    """PEM EC private key, or base64 of a 64-byte Ed25519 seed+public pair."""
    # Literal '\n' sequences show up in unquoted env vars.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    if "-----BEGIN" in key_data:
        try:
            key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
        except ValueError as exc:
            raise ValueError(f"Unreadable PEM private key: {exc}") from exc
        if isinstance(key, (ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey)):
            return key, _algorithm_for(key)
        raise ValueError("PEM key must be an EC or Ed25519 private key")

    try:
        decoded = base64.b64decode(key_data, validate=True)
    except ValueError as exc:
        raise ValueError("Key secret must be a PEM EC key or base64 Ed25519 key") from exc
    if len(decoded) == 64:
        return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"
    raise ValueError("Key secret must be a PEM EC key or base64 Ed25519 key")


def parse_public_key(key_data: str) -> tuple[PublicKey, str]:
    """PEM public key, or base64 of a raw 32-byte Ed25519 public key."""
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    if "-----BEGIN" in key_data:
        key = serialization.load_pem_public_key(key_data.encode("utf-8"))
        if isinstance(key, (ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey)):
            return key, _algorithm_for(key)
        raise ValueError("PEM key must be an EC or Ed25519 public key")

    decoded = base64.b64decode(key_data)
    if len(decoded) == 32:
        return ed25519.Ed25519PublicKey.from_public_bytes(decoded), "EdDSA"
    raise ValueError("Public key must be PEM or base64 Ed25519")


def _nonce() -> str:
    return "".join(random.choices("0123456789", k=16))
