"""
x402guard CLI: Spending guardrails for AI agents.

Commands:
    x402guard create      Create a guarded account
    x402guard fund        Deposit into a guarded account
    x402guard pay         Agent payment to an x402 endpoint
    x402guard check       Dry-run a payment against policy
    x402guard approve     Approve a queued payment
    x402guard reject      Reject a queued payment
    x402guard pending     List queued payments
    x402guard policy      Update limits
    x402guard set-agent   Replace the agent
    x402guard endpoint    Allow or deny one endpoint
    x402guard allow-all   Toggle the endpoint allowlist bypass
    x402guard withdraw    Return funds to the owner
    x402guard status      Show account state
    x402guard guards      List guarded accounts
    x402guard audit       View audit trail
    x402guard mint        Local ledger faucet
    x402guard demo        Run a full demo flow
"""

from __future__ import annotations

import functools
import json
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .account import normalize_address
from .approvals import ApprovalQueue, DEFAULT_APPROVAL_TTL_SECONDS
from .audit import AuditTrail
from .clock import PolicyClock
from .endpoints import endpoint_id_for_url, normalize_endpoint_id
from .engine import GuardEngine, PaymentResult
from .errors import GuardError
from .factory import GuardFactory
from .ledger import InMemoryLedger, LocalLedger
from .money import amount_usd_to_base_units, format_usd, limit_usd_to_base_units
from .notifications import WebhookNotifier
from .policy_store import DEFAULT_GUARD_DIR, PolicyStore


# ── Storage ───────────────────────────────────────────────────────

def _guard_home() -> Path:
    override = os.getenv("X402GUARD_HOME")
    return Path(override) if override else DEFAULT_GUARD_DIR


def _audit_trail(home: Optional[Path] = None) -> AuditTrail:
    home = home or _guard_home()
    return AuditTrail(
        path=home / "audit.jsonl",
        key_path=home.parent / f"{home.name}-secrets" / "audit_hmac.key",
    )


def _ledger() -> LocalLedger:
    return LocalLedger(_guard_home() / "ledger.json")


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 30m, 24h, 7d)")
    return int(raw[:-1]) * units[raw[-1]]


def _approval_ttl() -> int:
    raw = os.getenv("X402GUARD_APPROVAL_TTL")
    if not raw:
        return DEFAULT_APPROVAL_TTL_SECONDS
    return _parse_duration_to_seconds(raw)


def _engine() -> GuardEngine:
    home = _guard_home()
    webhook_url = os.getenv("X402GUARD_APPROVAL_WEBHOOK_URL")
    return GuardEngine(
        store=PolicyStore(home),
        ledger=_ledger(),
        audit=_audit_trail(home),
        approvals=ApprovalQueue(_approval_ttl()),
        notifier=WebhookNotifier(webhook_url) if webhook_url else None,
    )


def _factory() -> GuardFactory:
    home = _guard_home()
    return GuardFactory(PolicyStore(home), _audit_trail(home))


# ── Keys ──────────────────────────────────────────────────────────

def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _key_options(func):
    """Add a hidden-prompt ``--key`` plus the argv escape hatch."""

    @click.option("--key", prompt=True, hide_input=True,
                  help="Caller private key hex or op:// reference")
    @click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
    )
    @functools.wraps(func)
    def wrapper(*args, key: str, unsafe_allow_key_arg: bool, **kwargs):
        return func(*args, caller=_caller_from_key(key, unsafe_allow_key_arg), **kwargs)

    return wrapper


def _caller_from_key(key: str, unsafe_allow_key_arg: bool) -> str:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    try:
        return Account.from_key(_resolve_private_key(key)).address
    except Exception as exc:
        click.echo(f"❌ Failed to load key: {exc}", err=True)
        sys.exit(1)


def _endpoint_from_options(url: Optional[str], endpoint_id: Optional[str]) -> str:
    if bool(url) == bool(endpoint_id):
        raise click.UsageError("Pass exactly one of --url or --endpoint-id")
    try:
        if url:
            return endpoint_id_for_url(url)
        return normalize_endpoint_id(endpoint_id)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _fail(action: str, exc: Exception) -> None:
    click.echo(f"❌ {action}: {exc}", err=True)
    sys.exit(1)


def _echo_payment(result: PaymentResult, amount: int, as_json: bool = False) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.blocked:
            sys.exit(1)
        return
    if result.executed:
        click.echo(f"✅ Payment completed: {format_usd(amount)}")
        click.echo(f"   Reference:   {result.transfer_reference}")
        click.echo(f"   Daily spent: {format_usd(result.daily_spent_after)}")
    elif result.queued:
        click.echo(f"⏳ Payment queued for owner approval: {format_usd(amount)}")
        click.echo(f"   Payment ID:  {result.payment_id}")
    else:
        click.echo(f"❌ Payment blocked: {result.decision.reason.value}")
        sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """x402guard: Spending guardrails for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@_key_options
@click.option("--agent", prompt=True, help="Agent's Ethereum address")
@click.option("--max-per-tx", type=float, prompt=True, help="Maximum per transaction (USD)")
@click.option("--daily-limit", type=float, prompt=True, help="Daily spending cap (USD)")
@click.option("--approval-threshold", type=float, prompt=True,
              help="Payments above this need owner approval (USD)")
@click.option("--allow-all-endpoints", is_flag=True, default=False,
              help="Skip the endpoint allowlist")
def create(
    caller: str,
    agent: str,
    max_per_tx: float,
    daily_limit: float,
    approval_threshold: float,
    allow_all_endpoints: bool,
):
    """Create a guarded account owned by the key holder."""
    try:
        account = _factory().create_guard(
            owner=caller,
            agent=agent,
            max_per_transaction=limit_usd_to_base_units(max_per_tx),
            daily_limit=limit_usd_to_base_units(daily_limit),
            approval_threshold=limit_usd_to_base_units(approval_threshold),
            allow_all_endpoints=allow_all_endpoints,
        )
    except (GuardError, ValueError) as e:
        _fail("Failed to create guard", e)

    click.echo(f"✅ Guard created: {account.account_id}")
    click.echo(f"   Owner:     {account.owner}")
    click.echo(f"   Agent:     {account.agent}")
    click.echo(f"   Limits:    {format_usd(account.max_per_transaction)}/tx, "
               f"{format_usd(account.daily_limit)}/day")
    click.echo(f"   Approval:  above {format_usd(account.approval_threshold)}")


@main.command()
@click.argument("account_id")
@click.option("--amount", type=float, prompt=True, help="Amount in USD")
@_key_options
def fund(account_id: str, amount: float, caller: str):
    """Deposit from the key holder's balance into a guarded account."""
    try:
        balance = _engine().fund(account_id, caller, amount_usd_to_base_units(amount))
    except (GuardError, ValueError) as e:
        _fail("Funding failed", e)
    click.echo(f"✅ Funded {account_id}: balance {format_usd(balance)}")


@main.command()
@click.argument("account_id")
@click.option("--to", "to_address", prompt=True, help="Recipient address")
@click.option("--amount", type=float, prompt=True, help="Amount in USD")
@click.option("--url", default=None, help="x402 endpoint URL")
@click.option("--endpoint-id", default=None, help="Endpoint id (0x-prefixed keccak hash)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@_key_options
def pay(
    account_id: str,
    to_address: str,
    amount: float,
    url: Optional[str],
    endpoint_id: Optional[str],
    as_json: bool,
    caller: str,
):
    """Pay from a guarded account as its agent."""
    endpoint = _endpoint_from_options(url, endpoint_id)
    base_units = amount_usd_to_base_units(amount)
    try:
        result = _engine().execute_payment(account_id, caller, to_address, base_units, endpoint)
    except (GuardError, ValueError) as e:
        _fail("Payment failed", e)
    _echo_payment(result, base_units, as_json)


@main.command()
@click.argument("account_id")
@click.option("--amount", type=float, prompt=True, help="Amount in USD")
@click.option("--url", default=None, help="x402 endpoint URL")
@click.option("--endpoint-id", default=None, help="Endpoint id (0x-prefixed keccak hash)")
def check(account_id: str, amount: float, url: Optional[str], endpoint_id: Optional[str]):
    """Simulate a payment without changing anything."""
    endpoint = _endpoint_from_options(url, endpoint_id)
    try:
        verdict = _engine().check_payment(account_id, amount_usd_to_base_units(amount), endpoint)
    except (GuardError, ValueError) as e:
        _fail("Check failed", e)

    if not verdict.allowed:
        click.echo(f"❌ Would be blocked: {verdict.reason}")
    elif verdict.needs_approval:
        click.echo("⏳ Would be queued for owner approval")
    else:
        click.echo("✅ Would be paid immediately")


@main.command()
@click.argument("account_id")
@click.argument("payment_id", type=int)
@_key_options
def approve(account_id: str, payment_id: int, caller: str):
    """Approve and execute a queued payment."""
    try:
        result = _engine().approve_payment(account_id, caller, payment_id)
    except (GuardError, ValueError) as e:
        _fail("Approval failed", e)
    click.echo(f"✅ Payment {payment_id} approved and executed")
    click.echo(f"   Reference:   {result.transfer_reference}")
    click.echo(f"   Daily spent: {format_usd(result.daily_spent_after)}")


@main.command()
@click.argument("account_id")
@click.argument("payment_id", type=int)
@_key_options
def reject(account_id: str, payment_id: int, caller: str):
    """Reject a queued payment."""
    try:
        pending = _engine().reject_payment(account_id, caller, payment_id)
    except (GuardError, ValueError) as e:
        _fail("Rejection failed", e)
    click.echo(f"✅ Payment {payment_id} rejected ({format_usd(pending.amount)} to {pending.to})")


@main.command()
@click.argument("account_id")
@click.option("--all", "include_resolved", is_flag=True, help="Include executed and rejected")
@click.option("--json", "as_json", is_flag=True, help="Print payments as JSON")
def pending(account_id: str, include_resolved: bool, as_json: bool):
    """List payments waiting on the owner."""
    try:
        payments = _engine().list_pending_payments(account_id, include_resolved=include_resolved)
    except GuardError as e:
        _fail("Failed to list pending payments", e)

    now = time.time()
    if as_json:
        click.echo(json.dumps([p.to_dict(now) for p in payments], indent=2))
        return

    if not payments:
        click.echo("No pending payments.")
        return

    for p in payments:
        expires = time.strftime("%Y-%m-%d %H:%M", time.localtime(p.expiry))
        click.echo(f"  #{p.payment_id} {p.status(now):9} {format_usd(p.amount)} → {p.to} (expires {expires})")


@main.command()
@click.argument("account_id")
@click.option("--max-per-tx", type=float, prompt=True, help="Maximum per transaction (USD)")
@click.option("--daily-limit", type=float, prompt=True, help="Daily spending cap (USD)")
@click.option("--approval-threshold", type=float, prompt=True,
              help="Payments above this need owner approval (USD)")
@_key_options
def policy(
    account_id: str,
    max_per_tx: float,
    daily_limit: float,
    approval_threshold: float,
    caller: str,
):
    """Replace the spending limits."""
    try:
        _engine().set_policy(
            account_id,
            caller,
            limit_usd_to_base_units(max_per_tx),
            limit_usd_to_base_units(daily_limit),
            limit_usd_to_base_units(approval_threshold),
        )
    except (GuardError, ValueError) as e:
        _fail("Policy update failed", e)
    click.echo(f"✅ Policy updated for {account_id}")


@main.command("set-agent")
@click.argument("account_id")
@click.option("--agent", prompt=True, help="New agent address")
@_key_options
def set_agent(account_id: str, agent: str, caller: str):
    """Replace the account's agent."""
    try:
        _engine().set_agent(account_id, caller, agent)
    except (GuardError, ValueError) as e:
        _fail("Agent update failed", e)
    click.echo(f"✅ Agent set to {normalize_address(agent)}")


@main.command()
@click.argument("account_id")
@click.option("--url", default=None, help="x402 endpoint URL")
@click.option("--id", "endpoint_id", default=None, help="Endpoint id (0x-prefixed keccak hash)")
@click.option("--allow/--deny", default=True, help="Allow or remove the endpoint")
@_key_options
def endpoint(
    account_id: str,
    url: Optional[str],
    endpoint_id: Optional[str],
    allow: bool,
    caller: str,
):
    """Add or remove one endpoint on the allowlist."""
    if bool(url) == bool(endpoint_id):
        raise click.UsageError("Pass exactly one of --url or --id")
    engine = _engine()
    try:
        if url:
            endpoint_id = engine.set_endpoint_allowed_by_url(account_id, caller, url, allow)
        else:
            engine.set_endpoint_allowed(account_id, caller, endpoint_id, allow)
    except (GuardError, ValueError) as e:
        _fail("Endpoint update failed", e)
    click.echo(f"✅ Endpoint {'allowed' if allow else 'denied'}: {endpoint_id}")


@main.command("allow-all")
@click.argument("account_id")
@click.option("--enable/--disable", default=True, help="Bypass or enforce the allowlist")
@_key_options
def allow_all(account_id: str, enable: bool, caller: str):
    """Toggle the endpoint allowlist bypass."""
    try:
        _engine().set_allow_all_endpoints(account_id, caller, enable)
    except (GuardError, ValueError) as e:
        _fail("Update failed", e)
    click.echo(f"✅ All endpoints {'allowed' if enable else 'restricted to allowlist'}")


@main.command()
@click.argument("account_id")
@click.option("--amount", type=float, default=None, help="Amount in USD")
@click.option("--all", "withdraw_everything", is_flag=True, help="Withdraw the full balance")
@_key_options
def withdraw(account_id: str, amount: Optional[float], withdraw_everything: bool, caller: str):
    """Return funds to the owner."""
    if withdraw_everything == (amount is not None):
        raise click.UsageError("Pass exactly one of --amount or --all")
    engine = _engine()
    try:
        if withdraw_everything:
            withdrawn = engine.withdraw_all(account_id, caller)
            balance = engine.get_balance(account_id)
        else:
            withdrawn = amount_usd_to_base_units(amount)
            balance = engine.withdraw(account_id, caller, withdrawn)
    except (GuardError, ValueError) as e:
        _fail("Withdrawal failed", e)
    click.echo(f"✅ Withdrew {format_usd(withdrawn)}; balance {format_usd(balance)}")


@main.command()
@click.argument("account_id")
@click.option("--json", "as_json", is_flag=True, help="Print state as JSON")
def status(account_id: str, as_json: bool):
    """Show policy, counters and balance for a guarded account."""
    engine = _engine()
    try:
        account = engine.get_account(account_id)
        balance = engine.get_balance(account_id)
        remaining = engine.get_remaining_daily_budget(account_id)
        reset_in = engine.get_time_until_reset(account_id)
        waiting = engine.list_pending_payments(account_id)
    except GuardError as e:
        _fail("Status failed", e)

    if as_json:
        d = account.to_dict()
        d.update(
            {
                "balance": balance,
                "remaining_daily_budget": remaining,
                "seconds_until_reset": reset_in,
                "pending": len(waiting),
            }
        )
        click.echo(json.dumps(d, indent=2))
        return

    click.echo(f"📊 Guard {account.account_id}")
    click.echo(f"   Owner:        {account.owner}")
    click.echo(f"   Agent:        {account.agent}")
    click.echo(f"   Balance:      {format_usd(balance)}")
    click.echo(f"   Per tx:       {format_usd(account.max_per_transaction)}")
    click.echo(f"   Daily:        {format_usd(account.daily_spent)} of {format_usd(account.daily_limit)}"
               f" ({format_usd(remaining)} left, resets in {reset_in}s)")
    click.echo(f"   Approval:     above {format_usd(account.approval_threshold)}")
    click.echo(f"   Total spent:  {format_usd(account.total_spent)}")
    click.echo(f"   Endpoints:    {'all' if account.allow_all_endpoints else 'allowlist'}")
    click.echo(f"   Pending:      {len(waiting)}")


@main.command()
@click.option("--owner", default=None, help="Filter by owner address")
def guards(owner: Optional[str]):
    """List guarded accounts."""
    factory = _factory()
    try:
        ids = factory.guards_by_owner(owner) if owner else factory.all_guards()
    except ValueError as e:
        _fail("Failed to list guards", e)
    if not ids:
        click.echo("No guards found.")
        return
    for account_id in ids:
        click.echo(f"  {account_id}")


@main.command()
@click.option("--account-id", default=None, help="Filter by account ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(account_id: Optional[str], limit: int):
    """View the audit trail."""
    try:
        events = _audit_trail().read_events(account_id=account_id, limit=limit)
    except GuardError as e:
        _fail("Audit trail unreadable", e)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_usd(event.amount)}" if event.amount else ""
        to = f" → {event.to}" if event.to else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{to}{reason}")


@main.command()
@click.argument("address")
@click.option("--amount", type=float, prompt=True, help="Amount in USD")
def mint(address: str, amount: float):
    """Credit test funds on the local ledger."""
    try:
        holder = normalize_address(address)
        _ledger().mint(holder, amount_usd_to_base_units(amount))
    except ValueError as e:
        _fail("Mint failed", e)
    click.echo(f"✅ Minted {format_usd(amount_usd_to_base_units(amount))} to {holder}")


@main.command()
def demo():
    """Run a full demo of the guarded payment flow."""
    click.echo("🎬 x402guard Demo: Guarded Agent Payments")
    click.echo("=" * 50)

    with tempfile.TemporaryDirectory(prefix="x402guard-demo-") as tmp:
        home = Path(tmp)
        store = PolicyStore(home)
        audit_trail = _audit_trail(home)
        ledger = InMemoryLedger()
        clock = PolicyClock()
        factory = GuardFactory(store, audit_trail, clock)
        engine = GuardEngine(store, ledger, audit_trail, clock)

        click.echo("\n1️⃣  Generating test accounts...")
        owner = Account.create()
        agent = Account.create()
        merchant = Account.create()
        click.echo(f"   Owner: {owner.address}")
        click.echo(f"   Agent: {agent.address}")

        click.echo("\n2️⃣  Creating guard ($1/tx, $3/day, approval above $0.50)...")
        account = factory.create_guard(
            owner=owner.address,
            agent=agent.address,
            max_per_transaction=1_000_000,
            daily_limit=3_000_000,
            approval_threshold=500_000,
        )
        click.echo(f"   ✅ Guard: {account.account_id}")

        click.echo("\n3️⃣  Funding with $5.00 and allowing one endpoint...")
        ledger.mint(owner.address, 5_000_000)
        engine.fund(account.account_id, owner.address, 5_000_000)
        url = "https://api.example.com/v1/search"
        engine.set_endpoint_allowed_by_url(account.account_id, owner.address, url, True)
        allowed = endpoint_id_for_url(url)
        other = endpoint_id_for_url("https://unknown.example.com/paid")

        click.echo("\n4️⃣  Agent makes payments...")
        payments = [
            ("Search query", 250_000, allowed),
            ("Large report", 800_000, allowed),
            ("Over per-tx limit", 1_500_000, allowed),
            ("Unlisted endpoint", 100_000, other),
        ]
        queued_id = None
        for desc, amount, endpoint_id in payments:
            result = engine.execute_payment(
                account.account_id, agent.address, merchant.address, amount, endpoint_id
            )
            if result.executed:
                click.echo(f"   ✅ {format_usd(amount)} ({desc})")
            elif result.queued:
                queued_id = result.payment_id
                click.echo(f"   ⏳ {format_usd(amount)} ({desc}): queued as #{result.payment_id}")
            else:
                click.echo(f"   ❌ {format_usd(amount)} ({desc}): {result.decision.reason.value}")

        if queued_id is not None:
            click.echo("\n5️⃣  Owner approves the queued payment...")
            engine.approve_payment(account.account_id, owner.address, queued_id)
            click.echo(f"   ✅ #{queued_id} executed")

        click.echo("\n6️⃣  Account summary...")
        state = engine.get_account(account.account_id)
        click.echo(f"   Spent today: {format_usd(state.daily_spent)} of {format_usd(state.daily_limit)}")
        click.echo(f"   Balance:     {format_usd(engine.get_balance(account.account_id))}")
        click.echo(f"   Merchant:    {format_usd(ledger.balance_of(merchant.address))}")

        click.echo("\n7️⃣  Audit trail...")
        for event in audit_trail.read_events(account_id=account.account_id, limit=20):
            status = "✅" if event.success else "❌"
            amount = f" {format_usd(event.amount)}" if event.amount else ""
            click.echo(f"   {status} {event.event_type}{amount}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Policy → Pay → Queue → Approve → Audit")


if __name__ == "__main__":
    main()
