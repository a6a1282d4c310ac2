"""
Minimal 402-protected resource server.

Prices two routes and delegates verification and settlement to a remote
facilitator (``paygate facilitator`` by default, see PAYGATE_FACILITATOR_URL).
"""

import os

import uvicorn

from paygate.config import PaygateConfig
from paygate.facilitator import FacilitatorClient
from paygate.negotiator import PriceOption, PricedResource, RequirementNegotiator
from paygate.server import create_resource_app

PAY_TO = os.getenv("PAY_TO", "0x273326453960864FbA4D2F6Cf09D65fA13E45297")

config = PaygateConfig.from_env()
facilitator = FacilitatorClient(config.facilitator_url, timeout=config.request_timeout)

negotiator = RequirementNegotiator(
    facilitator,
    resources=[
        PricedResource(
            path="/data",
            options=[PriceOption(amount="1000", payee=PAY_TO, network=config.network)],
            content={"message": "Payment successful!", "cost": "1000 base units"},
            description="Test endpoint",
            category="data",
        ),
        PricedResource(
            path="/quote",
            options=[
                PriceOption(amount="500", payee=PAY_TO, network=config.network, scheme="upto"),
                PriceOption(amount="400", payee=PAY_TO, network=config.network, token="usdc"),
            ],
            content=lambda: {"quote": "Simplicity is prerequisite for reliability."},
            description="Quote of the moment",
            category="text",
        ),
    ],
    secret=config.secret,
    requirement_ttl=config.requirement_ttl,
)

app = create_resource_app(negotiator, base_url="http://127.0.0.1:8402")


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)
