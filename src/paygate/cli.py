"""
Paygate CLI: pay-per-request HTTP payments.

Commands:
    paygate facilitator   Serve a facilitator backed by the in-memory ledger
    paygate discover      Query a service registry
    paygate pay           Fetch a 402-protected URL, paying if challenged
    paygate audit         View or verify the audit trail
    paygate demo          Run the full challenge → pay → settle flow in-process
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click
from click.core import ParameterSource

from . import __version__
from .audit import AuditChainError, AuditTrail, EventType
from .config import PaygateConfig
from .discovery import DiscoveryCache, RegistryClient, ServiceDescriptor, sort_by_price
from .errors import DiscoveryError, ValidationError
from .networks import format_amount
from .spending import DEFAULT_SPENDING_LIMITS, SpendingGuard, SpendingLimit


def _config() -> PaygateConfig:
    try:
        return PaygateConfig.from_env()
    except ValueError as e:
        click.echo(f"❌ Bad configuration: {e}", err=True)
        sys.exit(1)


def _normalize_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


def _echo_services(services, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([s.to_dict() for s in services], indent=2))
        return
    if not services:
        click.echo("No services found.")
        return
    for s in services:
        networks = ",".join(s.networks) or "-"
        click.echo(f"  {s.id:<24} {s.pricing.amount:>12} {s.pricing.token:<8} {networks:<20} {s.name}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log protocol steps to stderr")
def main(verbose: bool):
    """Paygate: pay-per-request HTTP payments."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=3002, help="Bind port")
@click.option("--network", "networks", multiple=True, help="Advertised network (repeatable)")
@click.option("--api-key", envvar="PAYGATE_FACILITATOR_API_KEY", default=None,
              help="Require this bearer key on /verify and /settle")
def facilitator(host: str, port: int, networks: tuple[str, ...], api_key: Optional[str]):
    """Serve the facilitator HTTP API (in-memory ledger)."""
    import uvicorn

    from .auth import ApiKeyVerifier
    from .facilitator import LocalFacilitator, create_facilitator_app
    from .ledger import InMemoryLedger
    from .settlement import SettlementCoordinator
    from .verification import VerificationEngine

    config = _config()
    ledger = InMemoryLedger()
    audit = AuditTrail()
    engine = VerificationEngine(ledger, default_timeout=config.ledger_timeout, audit=audit)
    coordinator = SettlementCoordinator(
        engine, policy=config.retry_policy(), default_timeout=config.ledger_timeout, audit=audit
    )
    try:
        local = LocalFacilitator(engine, coordinator, networks=list(networks) or [config.network])
    except ValidationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    verifier = ApiKeyVerifier({"default": api_key}) if api_key else None

    click.echo(f"🚀 Facilitator on http://{host}:{port} (verify, settle, health)")
    uvicorn.run(create_facilitator_app(local, verifier=verifier), host=host, port=port)


@main.group()
@click.option("--registry-url", default=None, help="Registry base URL (default: PAYGATE_REGISTRY_URL)")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def discover(ctx: click.Context, registry_url: Optional[str], as_json: bool):
    """Find services in a registry."""
    config = _config()
    ctx.obj = {
        "client": RegistryClient(
            registry_url or config.registry_url,
            cache=DiscoveryCache(config.cache_policy()),
            timeout=config.request_timeout,
        ),
        "json": as_json,
    }
    ctx.call_on_close(ctx.obj["client"].close)


def _run_discovery(ctx: click.Context, fn):
    try:
        return fn(ctx.obj["client"])
    except (DiscoveryError, ValidationError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


@discover.command("category")
@click.argument("category")
@click.option("--network", default=None)
@click.option("--max-price", default=None, help="Maximum price in base units")
@click.option("--cheapest", is_flag=True, help="Sort by price")
@click.pass_context
def discover_category(ctx, category: str, network: Optional[str], max_price: Optional[str], cheapest: bool):
    """List services in a category."""
    services = _run_discovery(
        ctx, lambda c: c.discover_by_category(category, network=network, max_price=max_price)
    )
    _echo_services(sort_by_price(services) if cheapest else services, ctx.obj["json"])


@discover.command("search")
@click.argument("query")
@click.option("--network", default=None)
@click.option("--category", default=None)
@click.pass_context
def discover_search(ctx, query: str, network: Optional[str], category: Optional[str]):
    """Search services by keyword."""
    services = _run_discovery(ctx, lambda c: c.search(query, network=network, category=category))
    _echo_services(services, ctx.obj["json"])


@discover.command("service")
@click.argument("service_id")
@click.pass_context
def discover_service(ctx, service_id: str):
    """Show one service."""
    service: ServiceDescriptor = _run_discovery(ctx, lambda c: c.get_service(service_id))
    click.echo(json.dumps(service.to_dict(), indent=2))


@discover.command("popular")
@click.option("--network", default=None)
@click.option("--category", default=None)
@click.pass_context
def discover_popular(ctx, network: Optional[str], category: Optional[str]):
    """Most used services."""
    services = _run_discovery(ctx, lambda c: c.popular(network=network, category=category))
    _echo_services(services, ctx.obj["json"])


@discover.command("categories")
@click.pass_context
def discover_categories(ctx):
    """List service categories."""
    categories = _run_discovery(ctx, lambda c: c.categories())
    if ctx.obj["json"]:
        click.echo(json.dumps(list(categories)))
        return
    for category in categories:
        click.echo(f"  {category}")


@discover.command("check")
@click.argument("url")
@click.pass_context
def discover_check(ctx, url: str):
    """Probe a URL for payment support."""
    info = ctx.obj["client"].check_support(url)
    click.echo(json.dumps(info.to_dict(), indent=2))
    if not info.supported:
        sys.exit(1)


@main.command()
@click.argument("url")
@click.option("--private-key", prompt=True, hide_input=True, help="Payer's private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --private-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--max-amount", default=None, help="Refuse requirements above this many base units")
@click.option("--network", "networks", multiple=True, help="Allowed network (repeatable)")
@click.option("--payee", "payees", multiple=True, help="Allowed payee address (repeatable)")
@click.option(
    "--limits",
    type=click.Choice(sorted(DEFAULT_SPENDING_LIMITS.keys()), case_sensitive=False),
    default=None,
    help="Apply a spending-limit preset to the chosen token",
)
@click.option("--token", default="native", help="Token the --limits preset applies to")
def pay(
    url: str,
    private_key: str,
    unsafe_allow_key_arg: bool,
    max_amount: Optional[str],
    networks: tuple[str, ...],
    payees: tuple[str, ...],
    limits: Optional[str],
    token: str,
):
    """Fetch URL, answering a 402 challenge with a signed payment."""
    from .client import PaymentClient
    from .payload import PayloadBuilder

    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("private_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --private-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    try:
        key = _normalize_private_key(private_key)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    config = _config()
    guard = SpendingGuard()
    if limits:
        guard.set_limit(token, DEFAULT_SPENDING_LIMITS[limits.lower()])
    builder = PayloadBuilder(guard=guard, audit=AuditTrail())

    with PaymentClient.from_private_key(
        key,
        builder=builder,
        timeout=config.request_timeout,
        allowed_networks=list(networks) or None,
        allowed_payees=list(payees) or None,
        max_amount=max_amount,
    ) as client:
        result = client.pay(url)

    if not result.success:
        click.echo(f"❌ {result.reason}: {result.error or ''}".rstrip(": "), err=True)
        sys.exit(1)

    if result.receipt:
        req = result.requirement
        click.echo(f"✅ Paid {format_amount(req.amount, req.token, req.network)} → {req.payee}")
        click.echo(f"   Ledger ref: {result.receipt.get('ledgerReference')}")
        click.echo(f"   Block:      {result.receipt.get('blockNumber')}")
    else:
        click.echo("✅ No payment required")
    body = result.body
    click.echo(json.dumps(body, indent=2) if not isinstance(body, str) else body)


@main.command()
@click.option("--payer", default=None, help="Filter by payer address")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", "verify_only", is_flag=True, help="Only check the hash chain")
def audit(payer: Optional[str], limit: int, verify_only: bool):
    """View the audit trail."""
    trail = AuditTrail()
    try:
        if verify_only:
            click.echo(f"✅ Audit chain intact ({len(trail.verify())} events)")
            return
        events = trail.read_events(payer=payer, limit=limit)
    except AuditChainError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount} {event.token or ''}".rstrip() if event.amount else ""
        payee = f" → {event.payee}" if event.payee else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{payee}{reason}")


@main.command()
@click.option("--audit/--no-audit", "with_audit", default=False, help="Record demo events in the audit trail")
def demo(with_audit: bool):
    """Run the full payment flow in-process."""
    from eth_account import Account
    from fastapi.testclient import TestClient

    from .client import PaymentClient
    from .facilitator import FacilitatorClient, LocalFacilitator, create_facilitator_app
    from .ledger import InMemoryLedger
    from .negotiator import PricedResource, PriceOption, RequirementNegotiator
    from .payload import EthAccountSigner, PayloadBuilder
    from .server import create_resource_app
    from .settlement import RetryPolicy, SettlementCoordinator
    from .verification import VerificationEngine

    trail = AuditTrail() if with_audit else None

    click.echo("🎬 Paygate Demo: Pay-per-request Flow")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Generating accounts...")
    payer = Account.create()
    payee = Account.create()
    click.echo(f"   Payer: {payer.address}")
    click.echo(f"   Payee: {payee.address}")

    click.echo("\n2️⃣  Starting facilitator (in-memory ledger)...")
    ledger = InMemoryLedger()
    engine = VerificationEngine(ledger, audit=trail)
    coordinator = SettlementCoordinator(engine, policy=RetryPolicy(max_attempts=3, base_delay=0.1), audit=trail)
    facilitator_http = TestClient(create_facilitator_app(LocalFacilitator(engine, coordinator)))
    remote = FacilitatorClient(str(facilitator_http.base_url), http_client=facilitator_http)

    click.echo("\n3️⃣  Starting resource server...")
    negotiator = RequirementNegotiator(
        remote,
        resources=[
            PricedResource(
                path="/weather",
                options=[
                    PriceOption(amount="2500", payee=payee.address, network="base-sepolia", token="usdc"),
                    PriceOption(amount="1000", payee=payee.address, network="base-sepolia"),
                ],
                content={"city": "Lisbon", "forecast": "sunny", "high_c": 24},
                description="Daily forecast",
                category="data",
            ),
            PricedResource(
                path="/premium",
                options=[PriceOption(amount="50000", payee=payee.address, network="base-sepolia")],
                content={"report": "premium market report"},
                description="Premium report",
                category="data",
            ),
        ],
        audit=trail,
    )
    resource_http = TestClient(create_resource_app(negotiator))

    guard = SpendingGuard()
    guard.set_limit("native", SpendingLimit(per_transaction=10_000, daily=12_000))
    client = PaymentClient(
        EthAccountSigner(payer),
        builder=PayloadBuilder(guard=guard, audit=trail),
        http_client=resource_http,
    )

    click.echo("\n4️⃣  Paying for resources...")
    for path in ("/weather", "/weather", "/premium"):
        result = client.pay(f"{resource_http.base_url}{path}", retry_delay=0.1)
        if result.success:
            req = result.requirement
            ref = (result.receipt or {}).get("ledgerReference") or ""
            click.echo(f"   ✅ {path}: paid {format_amount(req.amount, req.token, req.network)} (ref {ref[:18]}…)")
        else:
            click.echo(f"   ❌ {path}: {result.reason}")

    click.echo("\n5️⃣  Spending summary...")
    allowance = guard.remaining(payer.address, "native")
    click.echo(f"   Spent today: {allowance.spent}")
    click.echo(f"   Remaining:   {allowance.daily}")
    click.echo(f"   Ledger settlements: {ledger.settlement_actions}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Challenge → Pay → Verify → Settle → Deliver")


if __name__ == "__main__":
    main()
