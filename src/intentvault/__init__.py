"""
intentvault: intent authorization and spend-policy engine.

Delegated spending over a custodied balance:
Owner sets caps and allowlists → Agent or counter-signed request proposes an
intent → Engine authorizes, enforces rolling caps, prevents replay, commits
atomically → Ledger moves value (or the commit is rolled back).
"""

__version__ = "0.1.0"

from .intent import Intent, IntentDomain, build_intent, hash_intent, sign_intent
from .policy import AllowlistStore, Policy, PolicyStore
from .windows import SpendWindow, roll_if_expired, reserve
from .replay import ReplayGuard
from .signature import verify_signature
from .authorization import AuthorizationEvaluator, CallerRole, SignatureState
from .ledger import HttpLedgerClient, InMemoryLedger, LedgerClient, TransferResult
from .state import VaultState
from .config import VaultConfig
from .executor import CommitReceipt, IntentExecutor
from .audit import AuditTrail, EventType

__all__ = [
    "Intent", "IntentDomain", "build_intent", "hash_intent", "sign_intent",
    "Policy", "PolicyStore", "AllowlistStore",
    "SpendWindow", "roll_if_expired", "reserve", "ReplayGuard", "verify_signature",
    "AuthorizationEvaluator", "CallerRole", "SignatureState",
    "LedgerClient", "InMemoryLedger", "HttpLedgerClient", "TransferResult",
    "VaultState", "VaultConfig", "IntentExecutor", "CommitReceipt",
    "AuditTrail", "EventType",
]
