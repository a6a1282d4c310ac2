"""
End-to-end run over real sockets: facilitator, resource server and client.

Starts both servers with uvicorn in background threads, pays for /data twice
with the same payer, and checks the settlement receipts.
"""

import threading
import time

import httpx
import uvicorn
from eth_account import Account

from paygate.client import PaymentClient
from paygate.facilitator import FacilitatorClient, LocalFacilitator, create_facilitator_app
from paygate.ledger import InMemoryLedger
from paygate.negotiator import PriceOption, PricedResource, RequirementNegotiator
from paygate.payload import PayloadBuilder
from paygate.server import create_resource_app
from paygate.spending import DEFAULT_SPENDING_LIMITS, SpendingGuard
from paygate.verification import VerificationEngine

FACILITATOR_PORT = 3002
RESOURCE_PORT = 8402


def serve(app, port):
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="error")


def wait_for(url, attempts=50):
    for _ in range(attempts):
        try:
            if httpx.get(url).status_code < 500:
                return
        except httpx.TransportError:
            pass
        time.sleep(0.1)
    raise SystemExit(f"Server at {url} never came up")


def main():
    print("🚀 Paygate E2E Test: Challenge → Pay → Settle over HTTP")
    print("=" * 55)

    ledger = InMemoryLedger()
    facilitator_app = create_facilitator_app(LocalFacilitator(VerificationEngine(ledger)))

    payee = Account.create()
    negotiator = RequirementNegotiator(
        FacilitatorClient(f"http://127.0.0.1:{FACILITATOR_PORT}"),
        resources=[
            PricedResource(
                path="/data",
                options=[PriceOption(amount="1000", payee=payee.address, network="base-sepolia")],
                content={"message": "Payment successful!"},
            )
        ],
    )
    resource_app = create_resource_app(negotiator)

    print("\n1️⃣  Starting servers...")
    threading.Thread(target=serve, args=(facilitator_app, FACILITATOR_PORT), daemon=True).start()
    threading.Thread(target=serve, args=(resource_app, RESOURCE_PORT), daemon=True).start()
    wait_for(f"http://127.0.0.1:{FACILITATOR_PORT}/health")
    wait_for(f"http://127.0.0.1:{RESOURCE_PORT}/health")
    print("   ✅ Facilitator and resource server up")

    print("\n2️⃣  Paying for /data...")
    guard = SpendingGuard({"native": DEFAULT_SPENDING_LIMITS["conservative"]})
    payer = Account.create()
    with PaymentClient.from_private_key(payer.key.hex(), builder=PayloadBuilder(guard=guard)) as client:
        for n in (1, 2):
            result = client.pay(f"http://127.0.0.1:{RESOURCE_PORT}/data")
            if not result.success:
                raise SystemExit(f"❌ Payment {n} failed: {result.reason} {result.error or ''}")
            print(f"   ✅ Payment {n}: {result.body} (ref {result.receipt['ledgerReference'][:18]}…)")

    print("\n3️⃣  Checking ledger...")
    assert ledger.settlement_actions == 2, ledger.settlement_actions
    print(f"   Settlements: {ledger.settlement_actions}")
    print(f"   Spent:       {guard.remaining(payer.address, 'native').spent}")
    print("\n🎉 E2E complete!")


if __name__ == "__main__":
    main()
