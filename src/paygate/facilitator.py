"""
Facilitator boundary.

A facilitator verifies and settles payloads in two separate phases. Three
pieces live here: ``LocalFacilitator`` (engine and coordinator in-process),
``FacilitatorClient`` (the same interface over HTTP) and
``create_facilitator_app`` (the FastAPI service the client talks to).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional, Protocol

import httpx
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import __version__
from .auth import RequestVerifier, request_uri
from .errors import AuthError, NetworkError, TransientFacilitatorError, ValidationError
from .models import (
    SUPPORTED_SCHEMES,
    PaymentPayload,
    PaymentRequirement,
    SettlementResult,
    SettlementStatus,
    VerificationResult,
)
from .networks import get_network, is_supported_network
from .settlement import SettlementCoordinator
from .verification import VerificationEngine

logger = logging.getLogger(__name__)


class Facilitator(Protocol):
    def verify(self, payload: PaymentPayload, requirement: PaymentRequirement) -> VerificationResult: ...

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirement) -> SettlementResult: ...


class LocalFacilitator:
    """Engine and coordinator behind the facilitator interface.

    ``networks`` narrows the registry to the networks this facilitator serves;
    empty means every registered network.
    """

    def __init__(
        self,
        engine: VerificationEngine,
        coordinator: Optional[SettlementCoordinator] = None,
        timeout: Optional[float] = None,
        networks: Optional[list[str]] = None,
    ):
        self.engine = engine
        self.coordinator = coordinator or SettlementCoordinator(engine)
        self.timeout = timeout
        self.networks = [get_network(n).id for n in networks or []]

    def serves(self, network: str) -> bool:
        if not is_supported_network(network):
            return False
        return not self.networks or get_network(network).id in self.networks

    def verify(self, payload: PaymentPayload, requirement: PaymentRequirement) -> VerificationResult:
        if not self.serves(requirement.network):
            return VerificationResult(valid=False, reason="unsupported_network")
        return self.engine.verify(payload, requirement, timeout=self.timeout)

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirement) -> SettlementResult:
        if not self.serves(requirement.network):
            return SettlementResult(
                success=False, status=SettlementStatus.REJECTED.value, reason="unsupported_network"
            )
        return self.coordinator.settle(payload, requirement, timeout=self.timeout)

    def settled(self, payload_id: str) -> Optional[SettlementResult]:
        return self.coordinator.settled(payload_id)


def facilitator_request(payload: PaymentPayload, requirement: PaymentRequirement) -> dict:
    return {"payload": payload.to_dict(), "requirement": requirement.to_dict()}


def parse_facilitator_request(body: Mapping[str, Any]) -> tuple[PaymentPayload, PaymentRequirement]:
    raw_payload = body.get("payload") or body.get("paymentPayload")
    raw_requirement = body.get("requirement") or body.get("paymentDetails")
    if not isinstance(raw_payload, Mapping) or not isinstance(raw_requirement, Mapping):
        raise ValidationError("Missing payload or requirement")
    return PaymentPayload.from_dict(raw_payload), PaymentRequirement.from_dict(raw_requirement)


class FacilitatorClient:
    """HTTP client for a remote facilitator."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.Client] = None,
        auth: Optional[httpx.Auth] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth = auth
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> FacilitatorClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def verify(self, payload: PaymentPayload, requirement: PaymentRequirement) -> VerificationResult:
        data = self._post("/verify", facilitator_request(payload, requirement))
        return VerificationResult.from_dict(data)

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirement) -> SettlementResult:
        data = self._post("/settle", facilitator_request(payload, requirement))
        return SettlementResult.from_dict(data)

    def health(self) -> dict:
        try:
            response = self._http.get(f"{self.base_url}/health")
        except httpx.TransportError as e:
            raise NetworkError(f"Facilitator unreachable: {e}") from e
        if response.status_code >= 500:
            raise TransientFacilitatorError("Facilitator unhealthy", status_code=response.status_code)
        return response.json()

    def _post(self, path: str, body: dict) -> dict:
        kwargs: dict[str, Any] = {"json": body}
        if self._auth is not None:
            kwargs["auth"] = self._auth
        try:
            response = self._http.post(f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Facilitator timeout on {path}: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Facilitator unreachable on {path}: {e}") from e

        if response.status_code >= 500:
            raise TransientFacilitatorError(
                f"Facilitator returned {response.status_code} on {path}",
                status_code=response.status_code,
            )
        if response.status_code in (401, 403):
            raise AuthError(f"Facilitator refused credentials on {path}")

        try:
            data = response.json()
        except ValueError as e:
            raise ValidationError(f"Facilitator returned non-JSON on {path}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Facilitator returned unexpected body on {path}")
        if response.status_code >= 400 and "valid" not in data and "success" not in data:
            raise ValidationError(f"Facilitator rejected request on {path}: {response.status_code}")
        return data


def require_auth(verifier: RequestVerifier):
    """FastAPI dependency that rejects requests the verifier does not accept."""

    def dependency(request: Request) -> str:
        uri = request_uri(request.method, request.url.hostname or "", request.url.port, request.url.path)
        try:
            return verifier.verify_request(request.method, uri, request.headers.get("authorization"))
        except AuthError as e:
            logger.warning("Facilitator auth failed for %s: %s", uri, e)
            raise HTTPException(status_code=401, detail=e.reason) from e

    return dependency


def create_facilitator_app(
    facilitator: LocalFacilitator,
    verifier: Optional[RequestVerifier] = None,
    title: str = "paygate facilitator",
) -> FastAPI:
    app = FastAPI(title=title, version=__version__)
    dependencies = [Depends(require_auth(verifier))] if verifier is not None else []

    @app.get("/")
    def root() -> dict:
        return {
            "service": title,
            "description": "Payment verification and settlement",
            "version": __version__,
            "schemes": sorted(SUPPORTED_SCHEMES),
            "networks": facilitator.networks,
            "endpoints": {
                "/verify": "POST - Verify a payment payload against its requirement",
                "/settle": "POST - Settle a verified payment",
                "/health": "GET - Health check",
            },
        }

    @app.get("/health")
    def health() -> dict:
        return {"status": "healthy", "service": title, "timestamp": int(time.time())}

    @app.post("/verify", dependencies=dependencies)
    def verify(body: dict = Body(...)) -> JSONResponse:
        try:
            payload, requirement = parse_facilitator_request(body)
        except ValidationError as e:
            return JSONResponse({"valid": False, "reason": e.reason}, status_code=400)

        result = facilitator.verify(payload, requirement)
        if result.valid:
            status = 200
        elif result.retryable:
            status = 503
        else:
            status = 400
        logger.info("verify %s -> %s (%s)", payload.payload_id[:12], status, result.reason or "ok")
        return JSONResponse(result.to_dict(), status_code=status)

    @app.post("/settle", dependencies=dependencies)
    def settle(body: dict = Body(...)) -> JSONResponse:
        try:
            payload, requirement = parse_facilitator_request(body)
        except ValidationError as e:
            return JSONResponse({"success": False, "reason": e.reason}, status_code=400)

        result = facilitator.settle(payload, requirement)
        if result.success:
            status = 200
        elif result.retryable:
            status = 503
        else:
            status = 400
        logger.info("settle %s -> %s (%s)", payload.payload_id[:12], status, result.reason or "ok")
        return JSONResponse(result.to_dict(), status_code=status)

    return app
