"""Per-account spending policy and counterparty allowlists."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from .errors import InvalidPolicyError, UnauthorizedError
from .intent import normalize_address
from .state import VaultState

logger = logging.getLogger(__name__)

# Largest value a SQLite INTEGER column holds.
MAX_AMOUNT = 2**63 - 1


@dataclass(frozen=True)
class Policy:
    """Spending caps in token base units. The zero policy permits nothing."""

    monthly_cap: int = 0
    weekly_cap: int = 0
    per_tx_cap: int = 0
    require_user_sig: bool = False

    def validate(self) -> None:
        for name in ("monthly_cap", "weekly_cap", "per_tx_cap"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPolicyError(f"{name} must be an integer base-unit value")
            if value < 0:
                raise InvalidPolicyError(f"{name} must be >= 0")
            if value > MAX_AMOUNT:
                raise InvalidPolicyError(f"{name} must be <= {MAX_AMOUNT}")
        if self.per_tx_cap > self.weekly_cap:
            raise InvalidPolicyError(
                f"per_tx_cap {self.per_tx_cap} exceeds weekly_cap {self.weekly_cap}"
            )
        if self.per_tx_cap > self.monthly_cap:
            raise InvalidPolicyError(
                f"per_tx_cap {self.per_tx_cap} exceeds monthly_cap {self.monthly_cap}"
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Policy":
        return cls(
            monthly_cap=int(payload.get("monthly_cap", 0)),
            weekly_cap=int(payload.get("weekly_cap", 0)),
            per_tx_cap=int(payload.get("per_tx_cap", 0)),
            require_user_sig=bool(payload.get("require_user_sig", False)),
        )


ZERO_POLICY = Policy()


def _require_owner(account: str, caller: str) -> None:
    try:
        normalized_caller = normalize_address(caller)
    except ValueError:
        raise UnauthorizedError(f"invalid caller identity {caller!r}") from None
    if normalized_caller != account:
        raise UnauthorizedError(f"only {account} may change its own settings (caller {caller})")


class PolicyStore:
    """Reads and replaces account policies."""

    def __init__(self, state: VaultState):
        self.state = state

    def set_policy(self, account: str, policy: Policy, caller: str) -> Policy:
        normalized = normalize_address(account)
        _require_owner(normalized, caller)
        policy.validate()
        with self.state.transaction() as conn:
            conn.execute(
                """
                INSERT INTO policies (
                    account, monthly_cap, weekly_cap, per_tx_cap, require_user_sig, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account) DO UPDATE SET
                    monthly_cap = excluded.monthly_cap,
                    weekly_cap = excluded.weekly_cap,
                    per_tx_cap = excluded.per_tx_cap,
                    require_user_sig = excluded.require_user_sig,
                    updated_at = excluded.updated_at
                """,
                (
                    normalized,
                    policy.monthly_cap,
                    policy.weekly_cap,
                    policy.per_tx_cap,
                    int(policy.require_user_sig),
                    int(time.time()),
                ),
            )
        logger.info(
            "Policy set for %s (month %d, week %d, per-tx %d, user sig %s)",
            normalized,
            policy.monthly_cap,
            policy.weekly_cap,
            policy.per_tx_cap,
            policy.require_user_sig,
        )
        return policy

    def get_policy(self, account: str) -> Policy:
        with self.state.read() as conn:
            return self.load(conn, normalize_address(account))

    @staticmethod
    def load(conn, account: str) -> Policy:
        row = conn.execute(
            """
            SELECT monthly_cap, weekly_cap, per_tx_cap, require_user_sig
            FROM policies WHERE account = ?
            """,
            (account,),
        ).fetchone()
        if row is None:
            return ZERO_POLICY
        return Policy(
            monthly_cap=row["monthly_cap"],
            weekly_cap=row["weekly_cap"],
            per_tx_cap=row["per_tx_cap"],
            require_user_sig=bool(row["require_user_sig"]),
        )


class AllowlistStore:
    """Merchant and agent allowlists, writable only by the account itself."""

    MERCHANT_TABLE = "merchant_allowlist"
    AGENT_TABLE = "agent_allowlist"

    def __init__(self, state: VaultState):
        self.state = state

    def set_merchant_allowed(self, account: str, merchant: str, allowed: bool, caller: str) -> None:
        self._set(self.MERCHANT_TABLE, account, merchant, allowed, caller)

    def set_agent_allowed(self, account: str, agent: str, allowed: bool, caller: str) -> None:
        self._set(self.AGENT_TABLE, account, agent, allowed, caller)

    def is_merchant_allowed(self, account: str, merchant: str) -> bool:
        return self._contains(self.MERCHANT_TABLE, account, merchant)

    def is_agent_allowed(self, account: str, agent: str) -> bool:
        return self._contains(self.AGENT_TABLE, account, agent)

    def list_merchants(self, account: str) -> list[str]:
        return self._list(self.MERCHANT_TABLE, account)

    def list_agents(self, account: str) -> list[str]:
        return self._list(self.AGENT_TABLE, account)

    def _set(self, table: str, account: str, counterparty: str, allowed: bool, caller: str) -> None:
        normalized = normalize_address(account)
        _require_owner(normalized, caller)
        party = normalize_address(counterparty)
        with self.state.transaction() as conn:
            if allowed:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO {table} (account, counterparty, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (normalized, party, int(time.time())),
                )
            else:
                conn.execute(
                    f"DELETE FROM {table} WHERE account = ? AND counterparty = ?",
                    (normalized, party),
                )
        logger.info(
            "%s %s for %s: %s",
            table.replace("_allowlist", ""),
            party,
            normalized,
            "allowed" if allowed else "removed",
        )

    def _contains(self, table: str, account: str, counterparty: str) -> bool:
        try:
            normalized = normalize_address(account)
            party = normalize_address(counterparty)
        except ValueError:
            return False
        with self.state.read() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {table} WHERE account = ? AND counterparty = ?",
                (normalized, party),
            ).fetchone()
        return row is not None

    def _list(self, table: str, account: str) -> list[str]:
        with self.state.read() as conn:
            rows = conn.execute(
                f"SELECT counterparty FROM {table} WHERE account = ? ORDER BY counterparty",
                (normalize_address(account),),
            ).fetchall()
        return [row["counterparty"] for row in rows]
