"""
Durable per-account vault state.

All account state lives in one SQLite database. Writes go through
BEGIN IMMEDIATE transactions so a commit is all-or-nothing, and every
account has its own exclusive lock (a thread lock plus an flock on a
per-account lock file) so intents for one account are serialized across
threads and processes while other accounts proceed in parallel.
"""

from __future__ import annotations

import fcntl
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .config import VaultConfig, ensure_private_dir, ensure_private_file
from .intent import normalize_address


class AccountLocks:
    """One exclusive critical section per account key."""

    def __init__(self, lock_dir: Path):
        self.lock_dir = lock_dir
        ensure_private_dir(self.lock_dir)
        self._registry_lock = threading.Lock()
        # account -> [lock, holders and waiters]; dropped when nobody uses it
        self._thread_locks: dict[str, list] = {}

    def _checkout(self, account: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._thread_locks.setdefault(account, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, account: str) -> None:
        with self._registry_lock:
            entry = self._thread_locks[account]
            entry[1] -= 1
            if entry[1] == 0:
                del self._thread_locks[account]

    def lock_path(self, account: str) -> Path:
        return self.lock_dir / f"{normalize_address(account)[2:]}.lock"

    @contextmanager
    def hold(self, account: str) -> Iterator[None]:
        key = normalize_address(account)
        path = self.lock_path(key)
        ensure_private_file(path)
        thread_lock = self._checkout(key)
        try:
            with thread_lock, open(path, "r+") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        finally:
            self._checkin(key)


class VaultState:
    """SQLite-backed storage shared by the policy, window and replay components."""

    def __init__(self, config: Optional[VaultConfig] = None):
        self.config = config or VaultConfig()
        ensure_private_dir(self.config.home)
        self.db_path = self.config.db_path
        self.locks = AccountLocks(self.config.lock_dir)
        self._init_db()
        ensure_private_file(self.db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body in one BEGIN IMMEDIATE transaction; roll back on any error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.read() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                    account TEXT PRIMARY KEY,
                    monthly_cap INTEGER NOT NULL DEFAULT 0,
                    weekly_cap INTEGER NOT NULL DEFAULT 0,
                    per_tx_cap INTEGER NOT NULL DEFAULT 0,
                    require_user_sig INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            for table in ("merchant_allowlist", "agent_allowlist"):
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        account TEXT NOT NULL,
                        counterparty TEXT NOT NULL,
                        updated_at INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (account, counterparty)
                    )
                    """
                )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spend_windows (
                    account TEXT PRIMARY KEY,
                    week_start INTEGER NOT NULL DEFAULT 0,
                    week_spent INTEGER NOT NULL DEFAULT 0,
                    month_start INTEGER NOT NULL DEFAULT 0,
                    month_spent INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS nonces (
                    account TEXT PRIMARY KEY,
                    nonce INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consumed_intents (
                    intent_hash TEXT PRIMARY KEY,
                    account TEXT NOT NULL,
                    nonce INTEGER NOT NULL,
                    consumed_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_consumed_intents_account
                ON consumed_intents (account)
                """
            )
