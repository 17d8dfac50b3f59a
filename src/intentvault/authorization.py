"""
Trust model for intent execution.

Who may execute an intent depends on three inputs: whether the account's
policy demands a per-intent owner signature, what role the caller plays for
the account, and the state of the supplied signature. Every combination is
listed in DECISION_TABLE so the precedence can be read (and tested) row by
row instead of reconstructed from nested branches.

    require_user_sig  role    signature  -> outcome
    ----------------  ------  ---------  ----------
    True              any     valid      authorized
    True              any     absent     rejected
    True              any     invalid    rejected
    False             owner   absent     authorized
    False             agent   absent     authorized
    False             owner   valid      authorized
    False             agent   valid      authorized
    False             owner   invalid    rejected (tampered signature)
    False             agent   invalid    rejected (tampered signature)
    False             other   valid      authorized
    False             other   absent     rejected
    False             other   invalid    rejected
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import UnauthorizedError
from .intent import Intent, normalize_address
from .signature import SignatureInput, is_signature_present, verify_signature


class CallerRole(str, Enum):
    OWNER = "owner"
    AGENT = "agent"
    OTHER = "other"


class SignatureState(str, Enum):
    ABSENT = "absent"
    INVALID = "invalid"
    VALID = "valid"


@dataclass(frozen=True)
class Decision:
    authorized: bool
    reason: str


_OWNER_SIG_OK = Decision(True, "valid owner signature")
_OWNER_SIG_REQUIRED = Decision(False, "policy requires an owner signature")
_OWNER_SIG_BAD = Decision(False, "owner signature does not verify")
_DELEGATED = Decision(True, "caller is trusted for this account")
_TAMPERED = Decision(False, "supplied signature does not verify")
_UNTRUSTED = Decision(False, "caller is neither owner nor allowlisted agent and no owner signature was supplied")

DECISION_TABLE: dict[tuple[bool, CallerRole, SignatureState], Decision] = {
    # Approval-first mode: only the owner's signature counts.
    (True, CallerRole.OWNER, SignatureState.VALID): _OWNER_SIG_OK,
    (True, CallerRole.OWNER, SignatureState.ABSENT): _OWNER_SIG_REQUIRED,
    (True, CallerRole.OWNER, SignatureState.INVALID): _OWNER_SIG_BAD,
    (True, CallerRole.AGENT, SignatureState.VALID): _OWNER_SIG_OK,
    (True, CallerRole.AGENT, SignatureState.ABSENT): _OWNER_SIG_REQUIRED,
    (True, CallerRole.AGENT, SignatureState.INVALID): _OWNER_SIG_BAD,
    (True, CallerRole.OTHER, SignatureState.VALID): _OWNER_SIG_OK,
    (True, CallerRole.OTHER, SignatureState.ABSENT): _OWNER_SIG_REQUIRED,
    (True, CallerRole.OTHER, SignatureState.INVALID): _OWNER_SIG_BAD,
    # Autopay mode: owner and allowlisted agents need no signature.
    (False, CallerRole.OWNER, SignatureState.ABSENT): _DELEGATED,
    (False, CallerRole.OWNER, SignatureState.VALID): _DELEGATED,
    (False, CallerRole.OWNER, SignatureState.INVALID): _TAMPERED,
    (False, CallerRole.AGENT, SignatureState.ABSENT): _DELEGATED,
    (False, CallerRole.AGENT, SignatureState.VALID): _DELEGATED,
    (False, CallerRole.AGENT, SignatureState.INVALID): _TAMPERED,
    (False, CallerRole.OTHER, SignatureState.VALID): _OWNER_SIG_OK,
    (False, CallerRole.OTHER, SignatureState.ABSENT): _UNTRUSTED,
    (False, CallerRole.OTHER, SignatureState.INVALID): _OWNER_SIG_BAD,
}


def resolve_caller_role(is_caller_account_owner: bool, is_caller_allowlisted_agent: bool) -> CallerRole:
    if is_caller_account_owner:
        return CallerRole.OWNER
    if is_caller_allowlisted_agent:
        return CallerRole.AGENT
    return CallerRole.OTHER


def classify_signature(intent_hash: str, signature: SignatureInput, owner: str) -> SignatureState:
    if not is_signature_present(signature):
        return SignatureState.ABSENT
    if verify_signature(intent_hash, signature, owner):
        return SignatureState.VALID
    return SignatureState.INVALID


def decide(require_user_sig: bool, role: CallerRole, signature_state: SignatureState) -> Decision:
    return DECISION_TABLE[(bool(require_user_sig), role, signature_state)]


class AuthorizationEvaluator:
    """Applies DECISION_TABLE to a concrete execution attempt."""

    def authorize(
        self,
        intent: Intent,
        intent_hash: str,
        require_user_sig: bool,
        caller: str,
        signature: SignatureInput,
        is_caller_account_owner: bool,
        is_caller_allowlisted_agent: bool,
    ) -> Decision:
        """Return the matching decision, raising UnauthorizedError on rejection."""
        role = resolve_caller_role(is_caller_account_owner, is_caller_allowlisted_agent)
        signature_state = classify_signature(intent_hash, signature, normalize_address(intent.account))
        decision = decide(require_user_sig, role, signature_state)
        if not decision.authorized:
            raise UnauthorizedError(
                f"{decision.reason} (caller {caller} as {role.value}, signature {signature_state.value})"
            )
        return decision
