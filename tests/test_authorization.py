"""Tests for the caller/signature trust model."""

import pytest
from eth_account import Account

from intentvault.authorization import (
    DECISION_TABLE,
    AuthorizationEvaluator,
    CallerRole,
    SignatureState,
    classify_signature,
    decide,
    resolve_caller_role,
)
from intentvault.errors import UnauthorizedError
from intentvault.intent import IntentDomain, build_intent, hash_intent, sign_intent


DOMAIN = IntentDomain("GroceryVault", "1", 84532, "0x" + "11" * 20)

OWNER = CallerRole.OWNER
AGENT = CallerRole.AGENT
OTHER = CallerRole.OTHER
ABSENT = SignatureState.ABSENT
INVALID = SignatureState.INVALID
VALID = SignatureState.VALID


@pytest.mark.parametrize(
    "require_sig,role,sig,authorized",
    [
        (True, OWNER, VALID, True),
        (True, OWNER, ABSENT, False),
        (True, OWNER, INVALID, False),
        (True, AGENT, VALID, True),
        (True, AGENT, ABSENT, False),
        (True, AGENT, INVALID, False),
        (True, OTHER, VALID, True),
        (True, OTHER, ABSENT, False),
        (True, OTHER, INVALID, False),
        (False, OWNER, VALID, True),
        (False, OWNER, ABSENT, True),
        (False, OWNER, INVALID, False),
        (False, AGENT, VALID, True),
        (False, AGENT, ABSENT, True),
        (False, AGENT, INVALID, False),
        (False, OTHER, VALID, True),
        (False, OTHER, ABSENT, False),
        (False, OTHER, INVALID, False),
    ],
)
def test_decision_table(require_sig, role, sig, authorized):
    assert decide(require_sig, role, sig).authorized is authorized


def test_decision_table_is_total():
    assert len(DECISION_TABLE) == 2 * len(CallerRole) * len(SignatureState)


def test_owner_role_wins_over_agent():
    assert resolve_caller_role(True, True) == CallerRole.OWNER
    assert resolve_caller_role(False, True) == CallerRole.AGENT
    assert resolve_caller_role(False, False) == CallerRole.OTHER


class TestClassifySignature:
    @pytest.fixture
    def signed(self):
        owner = Account.create()
        intent = build_intent(
            account=owner.address,
            merchant=Account.create().address,
            token="0x" + "22" * 20,
            amount=1_000_000,
            nonce=0,
            cart_reference="cart-1",
            now=1_700_000_000,
        )
        return owner, intent, hash_intent(intent, DOMAIN)

    @pytest.mark.parametrize("signature", [None, "", "0x", b""])
    def test_absent(self, signed, signature):
        owner, _, intent_hash = signed
        assert classify_signature(intent_hash, signature, owner.address) == ABSENT

    @pytest.mark.parametrize("signature", ["0xzz", "0x1234", "0x" + "00" * 65, 12345, ["0x00"]])
    def test_malformed_is_invalid(self, signed, signature):
        owner, _, intent_hash = signed
        assert classify_signature(intent_hash, signature, owner.address) == INVALID

    def test_owner_signature_is_valid(self, signed):
        owner, intent, intent_hash = signed
        signature = sign_intent(owner.key, intent, DOMAIN)
        assert classify_signature(intent_hash, signature, owner.address) == VALID

    def test_other_signer_is_invalid(self, signed):
        owner, intent, intent_hash = signed
        signature = sign_intent(Account.create().key, intent, DOMAIN)
        assert classify_signature(intent_hash, signature, owner.address) == INVALID


class TestAuthorizationEvaluator:
    def test_rejection_raises_with_context(self):
        owner = Account.create()
        stranger = Account.create().address
        intent = build_intent(
            account=owner.address,
            merchant=Account.create().address,
            token="0x" + "22" * 20,
            amount=1,
            nonce=0,
            now=1_700_000_000,
        )
        with pytest.raises(UnauthorizedError, match="other") as exc:
            AuthorizationEvaluator().authorize(
                intent,
                hash_intent(intent, DOMAIN),
                require_user_sig=False,
                caller=stranger,
                signature=None,
                is_caller_account_owner=False,
                is_caller_allowlisted_agent=False,
            )
        assert exc.value.code == "Unauthorized"

    def test_authorized_returns_decision(self):
        owner = Account.create()
        intent = build_intent(
            account=owner.address,
            merchant=Account.create().address,
            token="0x" + "22" * 20,
            amount=1,
            nonce=0,
            now=1_700_000_000,
        )
        decision = AuthorizationEvaluator().authorize(
            intent,
            hash_intent(intent, DOMAIN),
            require_user_sig=True,
            caller=owner.address,
            signature=sign_intent(owner.key, intent, DOMAIN),
            is_caller_account_owner=True,
            is_caller_allowlisted_agent=False,
        )
        assert decision.authorized
