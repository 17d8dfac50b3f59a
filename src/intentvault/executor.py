"""
Intent execution.

Flow:
1. Reject expired, malformed and out-of-policy intents (no lock held)
2. Pre-check nonce and consumed hash, then authorize the caller
3. Under the account lock, re-verify nonce/hash/caps and commit the nonce,
   consumed hash and spend window in one transaction
4. Ask the ledger to transfer; if it fails, run the compensating
   transaction that restores the exact pre-commit state
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .authorization import AuthorizationEvaluator
from .config import VaultConfig
from .errors import (
    ExpiredError,
    IntentAlreadyUsedError,
    IntentVaultError,
    InvalidIntentError,
    MerchantNotAllowedError,
    PerTxCapExceededError,
    StaleNonceError,
    TransferFailedError,
)
from .intent import ZERO_ADDRESS, Intent, IntentDomain, hash_intent, normalize_address
from .ledger import HttpLedgerClient, LedgerClient
from .policy import AllowlistStore, Policy, PolicyStore
from .replay import ReplayGuard
from .signature import SignatureInput
from .state import VaultState
from .windows import (
    SpendWindow,
    SpendWindowAccountant,
    remaining_monthly,
    remaining_weekly,
    reserve,
    roll_if_expired,
)

logger = logging.getLogger(__name__)

NO_LEDGER_MESSAGE = "No ledger configured (set INTENTVAULT_LEDGER_URL or pass a ledger)"


@dataclass
class CommitReceipt:
    """Proof that an intent was committed and paid."""

    intent_hash: str
    account: str
    merchant: str
    token: str
    amount: int
    nonce: int
    transfer_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "intent_hash": self.intent_hash,
            "account": self.account,
            "merchant": self.merchant,
            "token": self.token,
            "amount": self.amount,
            "nonce": self.nonce,
            "transfer_id": self.transfer_id,
        }


@dataclass
class _PendingCommit:
    intent: Intent
    intent_hash: str
    previous_nonce: int
    previous_window: SpendWindow
    committed_window: SpendWindow


class IntentExecutor:
    """Entry point for policy administration and intent execution."""

    def __init__(
        self,
        state: VaultState,
        ledger: Optional[LedgerClient],
        domain: IntentDomain,
        vault_address: str,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.state = state
        self.ledger = ledger
        self.domain = domain
        self.vault_address = normalize_address(vault_address)
        self.audit = audit
        self.clock = clock or (lambda: int(time.time()))
        self.policies = PolicyStore(state)
        self.allowlists = AllowlistStore(state)
        self.replay = ReplayGuard(state)
        self.windows = SpendWindowAccountant()
        self.authorizer = AuthorizationEvaluator()

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        ledger: Optional[LedgerClient] = None,
        audit: Optional[AuditTrail] = None,
        require_ledger: bool = True,
    ) -> "IntentExecutor":
        """Build an executor from ``config``.

        With ``require_ledger=False`` and no ledger URL the executor only
        administers policies and reads state; executing an intent raises.
        """
        if ledger is None and config.ledger_url:
            ledger = HttpLedgerClient(config.ledger_url)
        if ledger is None and require_ledger:
            raise ValueError(NO_LEDGER_MESSAGE)
        return cls(
            state=VaultState(config),
            ledger=ledger,
            domain=config.domain(),
            vault_address=config.vault_address,
            audit=audit,
        )

    # ── Owner operations ─────────────────────────────────────────

    def set_policy(self, account: str, policy: Policy, caller: str) -> Policy:
        saved = self.policies.set_policy(account, policy, caller)
        self._audit(
            EventType.POLICY_UPDATED,
            account=normalize_address(account),
            caller=caller,
            details=saved.to_dict(),
        )
        return saved

    def set_merchant_allowed(self, account: str, merchant: str, allowed: bool, caller: str) -> None:
        self.allowlists.set_merchant_allowed(account, merchant, allowed, caller)
        self._audit(
            EventType.ALLOWLIST_UPDATED,
            account=normalize_address(account),
            caller=caller,
            details={"kind": "merchant", "counterparty": normalize_address(merchant), "allowed": allowed},
        )

    def set_agent_allowed(self, account: str, agent: str, allowed: bool, caller: str) -> None:
        self.allowlists.set_agent_allowed(account, agent, allowed, caller)
        self._audit(
            EventType.ALLOWLIST_UPDATED,
            account=normalize_address(account),
            caller=caller,
            details={"kind": "agent", "counterparty": normalize_address(agent), "allowed": allowed},
        )

    # ── Read accessors ───────────────────────────────────────────

    def get_policy(self, account: str) -> Policy:
        return self.policies.get_policy(account)

    def get_nonce(self, account: str) -> int:
        return self.replay.get_nonce(normalize_address(account))

    def is_merchant_allowed(self, account: str, merchant: str) -> bool:
        return self.allowlists.is_merchant_allowed(account, merchant)

    def is_agent_allowed(self, account: str, agent: str) -> bool:
        return self.allowlists.is_agent_allowed(account, agent)

    def get_window(self, account: str) -> SpendWindow:
        with self.state.read() as conn:
            return self.windows.load(conn, normalize_address(account))

    def remaining_weekly(self, account: str) -> int:
        """Weekly allowance left as of now, as if the window had been rolled."""
        return remaining_weekly(self.get_window(account), self.get_policy(account), self.clock())

    def remaining_monthly(self, account: str) -> int:
        """Monthly allowance left as of now, as if the window had been rolled."""
        return remaining_monthly(self.get_window(account), self.get_policy(account), self.clock())

    def account_summary(self, account: str, token: Optional[str] = None) -> dict:
        normalized = normalize_address(account)
        window = self.get_window(normalized)
        policy = self.get_policy(normalized)
        now = self.clock()
        summary = {
            "account": normalized,
            "policy": policy.to_dict(),
            "nonce": self.get_nonce(normalized),
            "remaining_weekly": remaining_weekly(window, policy, now),
            "remaining_monthly": remaining_monthly(window, policy, now),
            "window": {
                "week_start": window.week_start,
                "week_spent": window.week_spent,
                "month_start": window.month_start,
                "month_spent": window.month_spent,
            },
            "merchants": self.allowlists.list_merchants(normalized),
            "agents": self.allowlists.list_agents(normalized),
        }
        if token is not None and self.ledger is not None:
            summary["balance"] = self.ledger.balance_of(normalized, token)
        return summary

    def intent_hash(self, intent: Intent) -> str:
        return hash_intent(intent, self.domain)

    # ── Execution ────────────────────────────────────────────────

    def execute_intent(self, intent: Intent, signature: SignatureInput, caller: str) -> CommitReceipt:
        """Validate, authorize, commit and pay ``intent``; exactly once per intent hash."""
        if self.ledger is None:
            raise ValueError(NO_LEDGER_MESSAGE)
        now = self.clock()
        intent_hash: Optional[str] = None
        try:
            canonical, intent_hash = self._prevalidate(intent, signature, caller, now)
            with self.state.locks.hold(canonical.account):
                pending = self._commit(canonical, intent_hash, now)
                receipt = self._settle(pending, caller)
        except TransferFailedError:
            raise
        except IntentVaultError as e:
            self._audit(
                EventType.INTENT_REJECTED,
                account=_safe_address(intent.account),
                caller=caller,
                merchant=_safe_address(intent.merchant),
                amount=intent.amount if isinstance(intent.amount, int) else None,
                intent_hash=intent_hash,
                success=False,
                reason=str(e),
                details={"code": e.code},
            )
            logger.info("Intent rejected (%s): %s", e.code, e)
            raise
        return receipt

    def _prevalidate(
        self,
        intent: Intent,
        signature: SignatureInput,
        caller: str,
        now: int,
    ) -> tuple[Intent, str]:
        try:
            deadline = int(intent.deadline)
        except (TypeError, ValueError):
            raise InvalidIntentError(f"Invalid deadline: {intent.deadline!r}") from None
        if now > deadline:
            raise ExpiredError(deadline=deadline, now=now)

        if not intent.account or _safe_address(intent.account) in (None, ZERO_ADDRESS):
            raise InvalidIntentError(f"Missing or invalid account: {intent.account!r}")
        if isinstance(intent.amount, bool) or not isinstance(intent.amount, int) or intent.amount <= 0:
            raise InvalidIntentError(f"Amount must be a positive integer, got {intent.amount!r}")
        try:
            canonical = intent.normalized()
        except ValueError as e:
            raise InvalidIntentError(str(e)) from e

        policy = self.policies.get_policy(canonical.account)
        if canonical.amount > policy.per_tx_cap:
            raise PerTxCapExceededError(canonical.amount, policy.per_tx_cap)

        if not self.allowlists.is_merchant_allowed(canonical.account, canonical.merchant):
            raise MerchantNotAllowedError(canonical.account, canonical.merchant)

        current_nonce = self.replay.get_nonce(canonical.account)
        if canonical.nonce != current_nonce:
            raise StaleNonceError(expected=current_nonce, got=canonical.nonce)

        intent_hash = hash_intent(canonical, self.domain)
        if self.replay.is_consumed(intent_hash):
            raise IntentAlreadyUsedError(intent_hash)

        normalized_caller = _safe_address(caller)
        self.authorizer.authorize(
            canonical,
            intent_hash,
            require_user_sig=policy.require_user_sig,
            caller=caller,
            signature=signature,
            is_caller_account_owner=normalized_caller == canonical.account,
            is_caller_allowlisted_agent=(
                normalized_caller is not None
                and self.allowlists.is_agent_allowed(canonical.account, normalized_caller)
            ),
        )
        return canonical, intent_hash

    def _commit(self, intent: Intent, intent_hash: str, now: int) -> _PendingCommit:
        """Re-verify and apply nonce, consumed hash and window in one transaction."""
        with self.state.transaction() as conn:
            previous_nonce = self.replay.check(conn, intent, intent_hash)
            policy = PolicyStore.load(conn, intent.account)
            if intent.amount > policy.per_tx_cap:
                raise PerTxCapExceededError(intent.amount, policy.per_tx_cap)
            previous_window = self.windows.load(conn, intent.account)
            committed_window = reserve(roll_if_expired(previous_window, now), intent.amount, policy)
            self.replay.consume(conn, intent, intent_hash)
            self.windows.save(conn, intent.account, committed_window)

        logger.info(
            "Intent committed: %s (account %s, nonce %d, amount %d, week %d/%d)",
            intent_hash,
            intent.account,
            intent.nonce,
            intent.amount,
            committed_window.week_spent,
            policy.weekly_cap,
        )
        self._audit(
            EventType.INTENT_COMMITTED,
            account=intent.account,
            merchant=intent.merchant,
            token=intent.token,
            amount=intent.amount,
            intent_hash=intent_hash,
            details={"nonce": intent.nonce},
        )
        return _PendingCommit(
            intent=intent,
            intent_hash=intent_hash,
            previous_nonce=previous_nonce,
            previous_window=previous_window,
            committed_window=committed_window,
        )

    def _settle(self, pending: _PendingCommit, caller: str) -> CommitReceipt:
        intent = pending.intent
        error: Optional[str] = None
        transfer_id: Optional[str] = None
        try:
            result = self.ledger.transfer(
                self.vault_address,
                intent.merchant,
                intent.token,
                intent.amount,
                reference=pending.intent_hash,
            )
            if result.success:
                transfer_id = result.transfer_id
            else:
                error = result.error or "Ledger reported failure"
        except Exception as e:
            error = f"Ledger error: {type(e).__name__}: {e}"

        if error is not None:
            logger.warning("Transfer failed for %s, rolling back: %s", pending.intent_hash, error)
            self._audit(
                EventType.TRANSFER_FAILED,
                account=intent.account,
                caller=caller,
                merchant=intent.merchant,
                token=intent.token,
                amount=intent.amount,
                intent_hash=pending.intent_hash,
                success=False,
                reason=error,
            )
            self._compensate(pending)
            raise TransferFailedError(pending.intent_hash, error)

        self._audit(
            EventType.INTENT_EXECUTED,
            account=intent.account,
            caller=caller,
            merchant=intent.merchant,
            token=intent.token,
            amount=intent.amount,
            intent_hash=pending.intent_hash,
            details={"nonce": intent.nonce, "transfer_id": transfer_id},
        )
        return CommitReceipt(
            intent_hash=pending.intent_hash,
            account=intent.account,
            merchant=intent.merchant,
            token=intent.token,
            amount=intent.amount,
            nonce=intent.nonce,
            transfer_id=transfer_id,
        )

    def _compensate(self, pending: _PendingCommit) -> None:
        account = pending.intent.account
        with self.state.transaction() as conn:
            self.replay.release(conn, account, pending.intent_hash, pending.previous_nonce)
            self.windows.save(conn, account, pending.previous_window)
        logger.info(
            "Intent rolled back: %s (nonce restored to %d)",
            pending.intent_hash,
            pending.previous_nonce,
        )
        self._audit(
            EventType.INTENT_ROLLED_BACK,
            account=account,
            intent_hash=pending.intent_hash,
            success=False,
            details={"nonce": pending.previous_nonce},
        )

    def _audit(self, event_type: EventType, **kwargs) -> None:
        """Record an event. Trail failures are logged, never raised into execution."""
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, **kwargs)
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning("Audit write failed for %s: %s", event_type.value, e)


def _safe_address(value) -> Optional[str]:
    try:
        return normalize_address(value)
    except (TypeError, ValueError):
        return None
