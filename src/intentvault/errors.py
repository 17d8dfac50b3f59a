"""
intentvault error types.

Every rejection the engine can produce has its own exception class so
callers can tell causes apart (re-sign, bump the nonce, wait for the window
to roll, alert). Each class carries a stable ``code`` matching the error
taxonomy exposed to API clients.
"""

from __future__ import annotations


class IntentVaultError(Exception):
    """Base error for all intentvault operations."""

    code = "IntentVaultError"


# Policy errors
class PolicyError(IntentVaultError):
    """Base error for policy and allowlist writes."""
    pass


class InvalidPolicyError(PolicyError):
    """Policy violates its own cap ordering."""

    code = "InvalidPolicy"

    def __init__(self, message: str):
        super().__init__(f"Invalid policy: {message}")


# Authorization errors
class AuthorizationError(IntentVaultError):
    """Base error for trust decisions."""
    pass


class UnauthorizedError(AuthorizationError):
    """Caller/signature combination may not perform this operation."""

    code = "Unauthorized"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Unauthorized: {reason}")


# Intent errors
class IntentError(IntentVaultError):
    """Base error for malformed or out-of-policy intents."""
    pass


class ExpiredError(IntentError):
    """Intent deadline has passed."""

    code = "Expired"

    def __init__(self, deadline: int, now: int):
        self.deadline = deadline
        self.now = now
        super().__init__(f"Intent expired at {deadline} (now {now})")


class InvalidIntentError(IntentError):
    """Intent has a non-positive amount or no account."""

    code = "InvalidIntent"


class MerchantNotAllowedError(IntentError):
    """Merchant is not on the account's merchant allowlist."""

    code = "MerchantNotAllowed"

    def __init__(self, account: str, merchant: str):
        self.account = account
        self.merchant = merchant
        super().__init__(f"Merchant {merchant} is not allowed for {account}")


# Cap errors
class CapError(IntentVaultError):
    """Base error for spending limit violations."""

    def __init__(self, amount: int, limit: int, spent: int = 0):
        self.amount = amount
        self.limit = limit
        self.spent = spent
        super().__init__(self._message())

    def _message(self) -> str:
        return f"{self.amount} exceeds {self.limit}"


class PerTxCapExceededError(CapError):
    """Amount exceeds the per-transaction cap."""

    code = "PerTxCapExceeded"

    def _message(self) -> str:
        return f"Amount {self.amount} exceeds per-tx cap {self.limit}"


class WeeklyCapExceededError(CapError):
    """Amount would push the rolling week over its cap."""

    code = "WeeklyCapExceeded"

    def _message(self) -> str:
        return (
            f"Amount {self.amount} exceeds remaining weekly allowance "
            f"{max(0, self.limit - self.spent)} (spent {self.spent} of {self.limit})"
        )


class MonthlyCapExceededError(CapError):
    """Amount would push the rolling month over its cap."""

    code = "MonthlyCapExceeded"

    def _message(self) -> str:
        return (
            f"Amount {self.amount} exceeds remaining monthly allowance "
            f"{max(0, self.limit - self.spent)} (spent {self.spent} of {self.limit})"
        )


# Replay errors
class ReplayError(IntentVaultError):
    """Base error for nonce and intent-id reuse."""
    pass


class StaleNonceError(ReplayError):
    """Intent nonce does not match the account's current nonce."""

    code = "StaleNonce"

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"Stale nonce: expected {expected}, got {got}")


class IntentAlreadyUsedError(ReplayError):
    """Intent hash has already been consumed."""

    code = "IntentAlreadyUsed"

    def __init__(self, intent_hash: str):
        self.intent_hash = intent_hash
        super().__init__(f"Intent already used: {intent_hash}")


# Ledger errors
class LedgerError(IntentVaultError):
    """Base error for the external ledger collaborator."""
    pass


class TransferFailedError(LedgerError):
    """Ledger refused or failed the transfer; local commit was rolled back."""

    code = "TransferFailed"

    def __init__(self, intent_hash: str, reason: str):
        self.intent_hash = intent_hash
        self.reason = reason
        super().__init__(f"Transfer failed for {intent_hash}: {reason}")
