"""
intentvault CLI: spend-policy administration and intent execution.

Commands:
    intentvault policy set      Set an account's caps and signature mode
    intentvault policy show     Show an account's policy
    intentvault allow merchant  Allow or remove a merchant
    intentvault allow agent     Allow or remove an agent
    intentvault intent build    Build an intent file at the account's next nonce
    intentvault intent hash     Print an intent's deployment-bound hash
    intentvault intent sign     Sign an intent file as the account owner
    intentvault execute         Execute an intent file against the ledger
    intentvault status          Account summary (policy, nonce, windows)
    intentvault audit           View audit trail
    intentvault demo            Run a full local demo flow
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail
from .config import VaultConfig
from .errors import IntentVaultError
from .executor import IntentExecutor
from .intent import Intent, build_intent, hash_intent, normalize_address, sign_intent
from .ledger import InMemoryLedger
from .money import format_token_amount, parse_token_amount, parse_token_limit
from .policy import Policy
from .state import VaultState


# ── Helpers ───────────────────────────────────────────────────────

def _config() -> VaultConfig:
    return VaultConfig.from_env()


def _audit(config: VaultConfig) -> AuditTrail:
    return AuditTrail(path=config.audit_path, key_path=config.audit_key_path)


def _executor(config: VaultConfig, require_ledger: bool = False) -> IntentExecutor:
    try:
        return IntentExecutor.from_config(config, audit=_audit(config), require_ledger=require_ledger)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


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


def _owner_key(param: str, key_input: str, unsafe_allow_key_arg: bool) -> tuple[str, str]:
    """Resolve an owner key, refusing raw keys passed on argv."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing --{param.replace('_', '-')} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    try:
        private_key = _resolve_private_key(key_input)
    except Exception as e:
        click.echo(f"❌ Invalid key: {e}", err=True)
        sys.exit(1)
    return private_key, normalize_address(Account.from_key(private_key).address)


def _load_intent(path: Path) -> Intent:
    try:
        with open(path, encoding="utf-8") as f:
            return Intent.from_dict(json.load(f))
    except (OSError, KeyError, ValueError) as e:
        click.echo(f"❌ Cannot load intent {path}: {e}", err=True)
        sys.exit(1)


def _fail(e: IntentVaultError) -> None:
    click.echo(f"❌ {e.code}: {e}", err=True)
    sys.exit(1)


_owner_key_options = [
    click.option("--owner-key", prompt=True, hide_input=True,
                 help="Account owner's private key hex or op:// reference"),
    click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
    ),
]


def owner_key_options(func):
    for option in reversed(_owner_key_options):
        func = option(func)
    return func


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", is_flag=True, help="Log engine activity to stderr")
def main(verbose: bool):
    """intentvault: bounded, auditable spending for agents."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


@main.group("policy")
def policy_group():
    """Spending policy commands."""


@policy_group.command("set")
@owner_key_options
@click.option("--monthly-cap", type=str, required=True, help="Rolling 30-day cap (token units, e.g. 300)")
@click.option("--weekly-cap", type=str, required=True, help="Rolling 7-day cap (token units)")
@click.option("--per-tx-cap", type=str, required=True, help="Per-intent cap (token units)")
@click.option("--require-user-sig/--autopay", default=False,
              help="Require an owner signature on every intent (default: autopay for owner/agents)")
def policy_set(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    monthly_cap: str,
    weekly_cap: str,
    per_tx_cap: str,
    require_user_sig: bool,
):
    """Set the caller's own spending policy."""
    _, account = _owner_key("owner_key", owner_key, unsafe_allow_key_arg)
    config = _config()
    try:
        policy = Policy(
            monthly_cap=parse_token_limit(monthly_cap, config.token_decimals),
            weekly_cap=parse_token_limit(weekly_cap, config.token_decimals),
            per_tx_cap=parse_token_limit(per_tx_cap, config.token_decimals),
            require_user_sig=require_user_sig,
        )
        _executor(config).set_policy(account, policy, caller=account)
    except IntentVaultError as e:
        _fail(e)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Policy set for {account}")
    click.echo(f"   Monthly: {format_token_amount(policy.monthly_cap, config.token_decimals)}")
    click.echo(f"   Weekly:  {format_token_amount(policy.weekly_cap, config.token_decimals)}")
    click.echo(f"   Per-tx:  {format_token_amount(policy.per_tx_cap, config.token_decimals)}")
    click.echo(f"   Mode:    {'approval-first (owner signature)' if require_user_sig else 'autopay'}")


@policy_group.command("show")
@click.argument("account")
def policy_show(account: str):
    """Show an account's policy."""
    config = _config()
    try:
        policy = _executor(config).get_policy(account)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps({"account": normalize_address(account), **policy.to_dict()}, indent=2))


@main.group("allow")
def allow_group():
    """Merchant and agent allowlists."""


def _set_allowlist(kind: str, counterparty: str, allowed: bool, owner_key: str, unsafe: bool) -> None:
    _, account = _owner_key("owner_key", owner_key, unsafe)
    config = _config()
    executor = _executor(config)
    try:
        if kind == "merchant":
            executor.set_merchant_allowed(account, counterparty, allowed, caller=account)
        else:
            executor.set_agent_allowed(account, counterparty, allowed, caller=account)
    except IntentVaultError as e:
        _fail(e)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ {kind.capitalize()} {normalize_address(counterparty)} {'allowed' if allowed else 'removed'} for {account}")


@allow_group.command("merchant")
@click.argument("merchant")
@click.option("--allow/--deny", default=True, help="Allow or remove the merchant")
@owner_key_options
def allow_merchant(merchant: str, allow: bool, owner_key: str, unsafe_allow_key_arg: bool):
    """Allow or remove a merchant for the owner's account."""
    _set_allowlist("merchant", merchant, allow, owner_key, unsafe_allow_key_arg)


@allow_group.command("agent")
@click.argument("agent")
@click.option("--allow/--deny", default=True, help="Allow or remove the agent")
@owner_key_options
def allow_agent(agent: str, allow: bool, owner_key: str, unsafe_allow_key_arg: bool):
    """Allow or remove an agent for the owner's account."""
    _set_allowlist("agent", agent, allow, owner_key, unsafe_allow_key_arg)


@main.group("intent")
def intent_group():
    """Build and sign intents."""


@intent_group.command("build")
@click.option("--account", required=True, help="Paying account address")
@click.option("--merchant", required=True, help="Merchant address")
@click.option("--amount", type=str, required=True, help="Amount in token units (e.g. 85.00)")
@click.option("--token", default=None, help="Token address (default: INTENTVAULT_TOKEN_ADDRESS)")
@click.option("--cart", "cart_reference", default=None, help="Cart reference hashed into cartHash")
@click.option("--ttl", type=int, default=3600, help="Seconds until the intent expires")
@click.option("--nonce", type=int, default=None, help="Nonce override (default: account's next nonce)")
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Write intent JSON here")
def intent_build(
    account: str,
    merchant: str,
    amount: str,
    token: Optional[str],
    cart_reference: Optional[str],
    ttl: int,
    nonce: Optional[int],
    output: Optional[Path],
):
    """Build an intent for the account's current nonce."""
    config = _config()
    token = token or config.token_address
    if not token:
        click.echo("❌ --token is required when INTENTVAULT_TOKEN_ADDRESS is unset.", err=True)
        sys.exit(1)
    try:
        if nonce is None:
            nonce = _executor(config).get_nonce(account)
        intent = build_intent(
            account=account,
            merchant=merchant,
            token=token,
            amount=parse_token_amount(amount, config.token_decimals),
            nonce=nonce,
            cart_reference=cart_reference,
            ttl_seconds=ttl,
        )
    except ValueError as e:
        click.echo(f"❌ Failed to build intent: {e}", err=True)
        sys.exit(1)

    payload = json.dumps(intent.to_dict(), indent=2)
    if output is not None:
        output.write_text(payload + "\n", encoding="utf-8")
        click.echo(f"✅ Intent written to {output}")
        click.echo(f"   Hash: {hash_intent(intent, config.domain())}")
    else:
        click.echo(payload)


@intent_group.command("hash")
@click.argument("intent_file", type=click.Path(exists=True, path_type=Path))
def intent_hash_cmd(intent_file: Path):
    """Print the deployment-bound hash of an intent."""
    click.echo(hash_intent(_load_intent(intent_file), _config().domain()))


@intent_group.command("sign")
@click.argument("intent_file", type=click.Path(exists=True, path_type=Path))
@owner_key_options
def intent_sign(intent_file: Path, owner_key: str, unsafe_allow_key_arg: bool):
    """Sign an intent as its account owner."""
    private_key, signer = _owner_key("owner_key", owner_key, unsafe_allow_key_arg)
    intent = _load_intent(intent_file)
    if signer != intent.account:
        click.echo(f"❌ Key address {signer} is not the intent account {intent.account}", err=True)
        sys.exit(1)
    click.echo(sign_intent(private_key, intent, _config().domain()))


@main.command()
@click.argument("intent_file", type=click.Path(exists=True, path_type=Path))
@click.option("--caller", required=True, help="Address submitting the intent (owner, agent, or relayer)")
@click.option("--signature", default="0x", help="Owner signature (hex); omit for autopay")
def execute(intent_file: Path, caller: str, signature: str):
    """Execute an intent against the configured ledger."""
    config = _config()
    intent = _load_intent(intent_file)
    executor = _executor(config, require_ledger=True)
    try:
        receipt = executor.execute_intent(intent, signature, caller)
    except IntentVaultError as e:
        _fail(e)

    click.echo("✅ Intent executed!")
    click.echo(f"   Hash:     {receipt.intent_hash}")
    click.echo(f"   Amount:   {format_token_amount(receipt.amount, config.token_decimals)}")
    click.echo(f"   Merchant: {receipt.merchant}")
    click.echo(f"   Transfer: {receipt.transfer_id}")
    click.echo(f"   Remaining this week: "
               f"{format_token_amount(executor.remaining_weekly(receipt.account), config.token_decimals)}")


@main.command()
@click.argument("account")
def status(account: str):
    """Show policy, nonce and remaining allowances for an account."""
    config = _config()
    try:
        summary = _executor(config).account_summary(account)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    policy = summary["policy"]

    def fmt(value: int) -> str:
        return format_token_amount(value, config.token_decimals)

    click.echo(f"📊 Account {summary['account']}")
    click.echo(f"   Nonce:      {summary['nonce']}")
    click.echo(f"   Mode:       {'approval-first' if policy['require_user_sig'] else 'autopay'}")
    click.echo(f"   Per-tx:     {fmt(policy['per_tx_cap'])}")
    click.echo(f"   Weekly:     {fmt(summary['remaining_weekly'])} left of {fmt(policy['weekly_cap'])}")
    click.echo(f"   Monthly:    {fmt(summary['remaining_monthly'])} left of {fmt(policy['monthly_cap'])}")
    click.echo(f"   Merchants:  {', '.join(summary['merchants']) or '(none)'}")
    click.echo(f"   Agents:     {', '.join(summary['agents']) or '(none)'}")


@main.command()
@click.option("--account", default=None, help="Filter by account")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(account: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit(_config())
    events = trail.read_events(account=account, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status_mark = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status_mark} {event.event_type}{amount}{merchant}{reason}")


@main.command()
def demo():
    """Run a full local demo of the autopay and approval-first flows."""
    click.echo("🎬 intentvault Demo: Delegated Grocery Spending")
    click.echo("=" * 50)

    home = Path(tempfile.mkdtemp(prefix="intentvault-demo-"))
    config = VaultConfig(home=home, vault_address=Account.create().address)
    audit_trail = AuditTrail(path=config.audit_path, key_path=home / "secrets" / "audit_hmac.key")

    user = Account.create()
    agent = Account.create()
    merchant = Account.create().address
    token = Account.create().address
    ledger = InMemoryLedger()
    ledger.mint(config.vault_address, token, parse_token_amount(1000))

    executor = IntentExecutor(
        state=VaultState(config),
        ledger=ledger,
        domain=config.domain(),
        vault_address=config.vault_address,
        audit=audit_trail,
    )
    fmt = format_token_amount

    click.echo("\n1️⃣  Owner sets policy: $300/month, $100/week, $50/tx, autopay")
    executor.set_policy(
        user.address,
        Policy(
            monthly_cap=parse_token_limit(300),
            weekly_cap=parse_token_limit(100),
            per_tx_cap=parse_token_limit(50),
            require_user_sig=False,
        ),
        caller=user.address,
    )
    executor.set_merchant_allowed(user.address, merchant, True, caller=user.address)
    executor.set_agent_allowed(user.address, agent.address, True, caller=user.address)
    click.echo(f"   User:     {user.address}")
    click.echo(f"   Agent:    {agent.address}")
    click.echo(f"   Merchant: {merchant}")

    click.echo("\n2️⃣  Agent executes intents without signatures...")
    for amount, cart in ((40, "weekly-produce"), (70, "party-supplies"), (45, "pantry-restock"), (20, "snacks")):
        intent = build_intent(
            account=user.address,
            merchant=merchant,
            token=token,
            amount=parse_token_amount(amount),
            nonce=executor.get_nonce(user.address),
            cart_reference=cart,
        )
        try:
            receipt = executor.execute_intent(intent, None, caller=agent.address)
            click.echo(f"   ✅ {fmt(receipt.amount)} → {cart} (nonce {receipt.nonce})")
        except IntentVaultError as e:
            click.echo(f"   ❌ {fmt(intent.amount)} → {cart}: {e.code}")

    click.echo("\n3️⃣  Owner switches to approval-first mode...")
    executor.set_policy(
        user.address,
        Policy(
            monthly_cap=parse_token_limit(300),
            weekly_cap=parse_token_limit(100),
            per_tx_cap=parse_token_limit(50),
            require_user_sig=True,
        ),
        caller=user.address,
    )
    intent = build_intent(
        account=user.address,
        merchant=merchant,
        token=token,
        amount=parse_token_amount(10),
        nonce=executor.get_nonce(user.address),
        cart_reference="milk-and-eggs",
    )
    try:
        executor.execute_intent(intent, None, caller=agent.address)
    except IntentVaultError as e:
        click.echo(f"   ❌ Unsigned agent intent: {e.code}")
    signature = sign_intent(user.key, intent, config.domain())
    receipt = executor.execute_intent(intent, signature, caller=agent.address)
    click.echo(f"   ✅ Owner-signed intent: {fmt(receipt.amount)}")

    click.echo("\n4️⃣  Replaying the same signed intent...")
    try:
        executor.execute_intent(intent, signature, caller=agent.address)
    except IntentVaultError as e:
        click.echo(f"   ❌ Replay rejected: {e.code}")

    click.echo("\n5️⃣  Allowances...")
    click.echo(f"   Weekly left:  {fmt(executor.remaining_weekly(user.address))}")
    click.echo(f"   Monthly left: {fmt(executor.remaining_monthly(user.address))}")
    click.echo(f"   Merchant balance: {fmt(ledger.balance_of(merchant, token))}")

    click.echo("\n6️⃣  Audit trail (last 10 events)...")
    for event in audit_trail.read_events(limit=10):
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        mark = "✅" if event.success else "❌"
        click.echo(f"   {ts} {mark} {event.event_type}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Policy → Intent → Authorize → Commit → Transfer → Audit")
    click.echo(f"   State kept in {home}")


if __name__ == "__main__":
    main()
