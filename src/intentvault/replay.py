"""Nonce ordering and consumed-intent bookkeeping."""

from __future__ import annotations

import time

from .errors import IntentAlreadyUsedError, StaleNonceError
from .intent import Intent, normalize_hex32
from .state import VaultState


class ReplayGuard:
    """Rejects stale nonces and already-consumed intent hashes.

    The nonce and the consumed set are checked independently: a consumed
    hash stays unusable even if the nonce were ever rewound.
    """

    def __init__(self, state: VaultState):
        self.state = state

    def get_nonce(self, account: str) -> int:
        with self.state.read() as conn:
            return self.current_nonce(conn, account)

    def is_consumed(self, intent_hash: str) -> bool:
        with self.state.read() as conn:
            return self._consumed(conn, normalize_hex32(intent_hash, "intent_hash"))

    @staticmethod
    def current_nonce(conn, account: str) -> int:
        row = conn.execute("SELECT nonce FROM nonces WHERE account = ?", (account,)).fetchone()
        return 0 if row is None else int(row["nonce"])

    @staticmethod
    def _consumed(conn, intent_hash: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM consumed_intents WHERE intent_hash = ?",
            (intent_hash,),
        ).fetchone()
        return row is not None

    def check(self, conn, intent: Intent, intent_hash: str) -> int:
        """Raise on stale nonce or reused hash; return the current nonce."""
        current = self.current_nonce(conn, intent.account)
        if intent.nonce != current:
            raise StaleNonceError(expected=current, got=intent.nonce)
        if self._consumed(conn, intent_hash):
            raise IntentAlreadyUsedError(intent_hash)
        return current

    def consume(self, conn, intent: Intent, intent_hash: str) -> int:
        """Record ``intent_hash`` and advance the nonce; returns the new nonce.

        Must run after ``check`` inside the same transaction as the window
        update; the consumed_intents primary key backs up the hash check.
        """
        conn.execute(
            """
            INSERT INTO consumed_intents (intent_hash, account, nonce, consumed_at)
            VALUES (?, ?, ?, ?)
            """,
            (intent_hash, intent.account, intent.nonce, int(time.time())),
        )
        new_nonce = intent.nonce + 1
        conn.execute(
            """
            INSERT INTO nonces (account, nonce) VALUES (?, ?)
            ON CONFLICT(account) DO UPDATE SET nonce = excluded.nonce
            """,
            (intent.account, new_nonce),
        )
        return new_nonce

    def release(self, conn, account: str, intent_hash: str, previous_nonce: int) -> None:
        """Undo ``consume``: forget the hash and restore the prior nonce."""
        conn.execute("DELETE FROM consumed_intents WHERE intent_hash = ?", (intent_hash,))
        conn.execute(
            """
            INSERT INTO nonces (account, nonce) VALUES (?, ?)
            ON CONFLICT(account) DO UPDATE SET nonce = excluded.nonce
            """,
            (account, previous_nonce),
        )
