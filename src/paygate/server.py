"""FastAPI front for a RequirementNegotiator."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from . import __version__
from .headers import PAYMENT_HEADER
from .models import SUPPORTED_SCHEMES
from .negotiator import RequirementNegotiator, ResourceResponse


def _advertised_headers(negotiator: RequirementNegotiator, path: str) -> dict[str, str]:
    resource = negotiator.resource(path)
    networks = sorted({o.network for o in resource.options}) if resource else []
    return {
        "X-Payment-Required": "true",
        "X-Payment-Methods": ",".join(sorted(SUPPORTED_SCHEMES)),
        "X-Supported-Networks": ",".join(networks),
    }


def to_response(negotiator: RequirementNegotiator, path: str, result: ResourceResponse) -> Response:
    headers = dict(result.headers)
    if result.status_code == 402:
        headers.update(_advertised_headers(negotiator, path))
    return JSONResponse(result.body, status_code=result.status_code, headers=headers)


def create_resource_app(
    negotiator: RequirementNegotiator,
    base_url: str = "",
    title: str = "paygate resource server",
) -> FastAPI:
    app = FastAPI(title=title, version=__version__)

    @app.get("/health")
    def health() -> dict:
        return {"status": "healthy", "service": title}

    @app.get("/catalog")
    def catalog() -> dict:
        return {"services": [s.to_dict() for s in negotiator.catalog(base_url)]}

    @app.head("/{path:path}")
    def probe(path: str) -> Response:
        full_path = "/" + path
        if negotiator.resource(full_path) is None:
            return Response(status_code=404)
        return Response(status_code=402, headers=_advertised_headers(negotiator, full_path))

    @app.get("/{path:path}")
    def resource(path: str, request: Request) -> Response:
        full_path = "/" + path
        payment: Optional[str] = request.headers.get(PAYMENT_HEADER)
        result = negotiator.request_resource(full_path, payment)
        return to_response(negotiator, full_path, result)

    return app
