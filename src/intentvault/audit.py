"""
Audit trail for vault operations.

Every policy change and every intent outcome is appended to a JSONL file.
Each entry carries an HMAC over its own payload and the previous entry's
hash, so editing, reordering or deleting a line is detected the next time
the trail is read. Appends take an flock on the trail so several processes
can share one file without forking the chain.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import DEFAULT_HOME, ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = DEFAULT_HOME / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".intentvault-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "INTENTVAULT_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = {"prev_hash", "event_hash"}
_RESERVED_FIELDS = _CHAIN_FIELDS | {"event_type", "timestamp", "success"}
_TAIL_CHUNK = 4096


class EventType(str, Enum):
    POLICY_UPDATED = "policy_updated"
    ALLOWLIST_UPDATED = "allowlist_updated"
    INTENT_REJECTED = "intent_rejected"
    INTENT_COMMITTED = "intent_committed"
    TRANSFER_FAILED = "transfer_failed"
    INTENT_ROLLED_BACK = "intent_rolled_back"
    INTENT_EXECUTED = "intent_executed"


@dataclass
class AuditEvent:
    """One trail entry. Amounts are token base units."""

    event_type: str
    timestamp: float
    account: Optional[str] = None
    caller: Optional[str] = None
    merchant: Optional[str] = None
    token: Optional[str] = None
    amount: Optional[int] = None
    intent_hash: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only log shared by every account."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._append_lock = threading.Lock()

        for directory in {self.path.parent, self.key_path.parent}:
            ensure_private_dir(directory)
        ensure_private_file(self.path)
        self._key = self._load_key()

    def _load_key(self) -> bytes:
        from_env = os.getenv(AUDIT_KEY_ENV)
        if from_env:
            return from_env.encode()
        ensure_private_file(self.key_path)
        existing = self.key_path.read_bytes().strip()
        if existing:
            return existing
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        return key

    def _seal(self, record: dict[str, Any], prev_hash: str) -> str:
        body = json.dumps(record, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{body}".encode(), hashlib.sha256).hexdigest()

    def _verified_records(self, handle) -> Iterator[dict[str, Any]]:
        """Yield each stored record after checking its link and seal."""
        expected_prev = ""
        for line in handle:
            if not line.strip():
                continue
            record = json.loads(line)
            prev_hash = record.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            payload = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._seal(payload, prev_hash), record.get("event_hash") or ""):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = record["event_hash"]
            yield record

    @staticmethod
    def _tail_hash(handle) -> str:
        """Hash of the last entry, reading back from the end of a binary handle."""
        position = handle.seek(0, os.SEEK_END)
        tail = b""
        while position > 0:
            step = min(_TAIL_CHUNK, position)
            position -= step
            handle.seek(position)
            tail = handle.read(step) + tail
            lines = tail.strip().splitlines()
            if len(lines) > 1 or (lines and position == 0):
                return json.loads(lines[-1]).get("event_hash", "")
        return ""

    def log(self, event_type: EventType, success: bool = True, **attributes: Any) -> AuditEvent:
        """Append an event; ``attributes`` are the optional AuditEvent fields."""
        unknown = (set(attributes) - {f.name for f in fields(AuditEvent)}) | (set(attributes) & _RESERVED_FIELDS)
        if unknown:
            raise TypeError(f"Unknown audit fields: {sorted(unknown)}")
        record = {"event_type": event_type.value, "timestamp": time.time(), "success": success}
        record.update({k: v for k, v in attributes.items() if v is not None})

        with self._append_lock, open(self.path, "a+b") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._tail_hash(handle)
                event = AuditEvent.from_record(
                    {**record, "prev_hash": prev_hash or None, "event_hash": self._seal(record, prev_hash)}
                )
                handle.write((event.to_json() + "\n").encode())
                handle.flush()
                os.fsync(handle.fileno())
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return event

    def read_events(
        self,
        account: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain, then return the newest matching events."""
        wanted_account = account.lower() if account else None
        with open(self.path, "r") as handle:
            matches = [
                AuditEvent.from_record(record)
                for record in self._verified_records(handle)
                if (wanted_account is None or record.get("account") == wanted_account)
                and (event_type is None or record.get("event_type") == event_type.value)
            ]
        return matches[-limit:]

    def summary(self, account: Optional[str] = None) -> dict:
        events = self.read_events(account=account, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "executed_amount": sum(
                e.amount or 0 for e in events if e.event_type == EventType.INTENT_EXECUTED.value
            ),
            "last_event": events[-1].to_json() if events else None,
        }
