"""Shared fixtures for vault tests."""

import pytest
from eth_account import Account

from intentvault.audit import AuditTrail
from intentvault.config import VaultConfig
from intentvault.executor import IntentExecutor
from intentvault.intent import build_intent
from intentvault.ledger import InMemoryLedger
from intentvault.money import parse_token_amount, parse_token_limit
from intentvault.policy import Policy
from intentvault.state import VaultState


VAULT = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return VaultConfig(home=tmp_path / "vault", vault_address=VAULT)


@pytest.fixture
def state(config):
    return VaultState(config)


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.mint(VAULT, TOKEN, parse_token_amount(10_000))
    return ledger


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def agent():
    return Account.create()


@pytest.fixture
def merchant():
    return Account.create().address


@pytest.fixture
def executor(state, ledger, audit, config, clock):
    return IntentExecutor(
        state=state,
        ledger=ledger,
        domain=config.domain(),
        vault_address=VAULT,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def grocery_policy():
    """$300/month, $100/week, $50 per intent, autopay."""
    return Policy(
        monthly_cap=parse_token_limit(300),
        weekly_cap=parse_token_limit(100),
        per_tx_cap=parse_token_limit(50),
        require_user_sig=False,
    )


@pytest.fixture
def configured(executor, owner, agent, merchant, grocery_policy):
    executor.set_policy(owner.address, grocery_policy, caller=owner.address)
    executor.set_merchant_allowed(owner.address, merchant, True, caller=owner.address)
    executor.set_agent_allowed(owner.address, agent.address, True, caller=owner.address)
    return executor


@pytest.fixture
def make_intent(owner, merchant, clock, executor):
    """Build an intent for ``owner`` at the current nonce unless overridden."""

    def _make(amount, **kwargs):
        defaults = dict(
            account=owner.address,
            merchant=merchant,
            token=TOKEN,
            amount=parse_token_amount(amount),
            nonce=executor.get_nonce(kwargs.get("account", owner.address)),
            cart_reference=f"cart-{amount}",
            now=clock.now,
        )
        defaults.update(kwargs)
        return build_intent(**defaults)

    return _make
