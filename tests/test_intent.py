"""Tests for intent construction, hashing and signatures."""

import pytest
from dataclasses import replace
from eth_account import Account
from eth_utils import keccak

from intentvault.intent import (
    DEFAULT_INTENT_TTL_SECONDS,
    Intent,
    IntentDomain,
    build_intent,
    hash_intent,
    normalize_address,
    normalize_hex32,
    sign_intent,
)
from intentvault.signature import is_signature_present, recover_signer, signature_bytes, verify_signature


DOMAIN = IntentDomain("GroceryVault", "1", 84532, "0x" + "11" * 20)
NOW = 1_700_000_000


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def intent(owner):
    return build_intent(
        account=owner.address,
        merchant="0x" + "33" * 20,
        token="0x" + "22" * 20,
        amount=40_000_000,
        nonce=0,
        cart_reference="weekly-produce",
        now=NOW,
    )


class TestBuildIntent:
    def test_defaults(self, intent, owner):
        assert intent.account == owner.address.lower()
        assert intent.deadline == NOW + DEFAULT_INTENT_TTL_SECONDS
        assert intent.cart_hash == "0x" + keccak(text="weekly-produce").hex()

    def test_explicit_cart_hash_and_deadline(self, owner):
        intent = build_intent(
            account=owner.address,
            merchant="0x" + "33" * 20,
            token="0x" + "22" * 20,
            amount=1,
            nonce=3,
            cart_hash="0x" + "AB" * 32,
            deadline=NOW + 5,
        )
        assert intent.cart_hash == "0x" + "ab" * 32
        assert intent.deadline == NOW + 5

    def test_generated_cart_hash(self, owner):
        kwargs = dict(account=owner.address, merchant="0x" + "33" * 20, token="0x" + "22" * 20, amount=1, nonce=0)
        assert build_intent(**kwargs).cart_hash.startswith("0x")

    def test_invalid_address(self, owner):
        with pytest.raises(ValueError, match="Invalid Ethereum address"):
            build_intent(account=owner.address, merchant="not-an-address", token="0x" + "22" * 20, amount=1, nonce=0)

    def test_negative_nonce(self, owner):
        with pytest.raises(ValueError, match="nonce"):
            build_intent(account=owner.address, merchant="0x" + "33" * 20, token="0x" + "22" * 20, amount=1, nonce=-1)

    def test_dict_round_trip(self, intent):
        assert Intent.from_dict(intent.to_dict()) == intent


class TestHashIntent:
    def test_deterministic(self, intent):
        assert hash_intent(intent, DOMAIN) == hash_intent(intent, DOMAIN)
        assert len(hash_intent(intent, DOMAIN)) == 66

    def test_address_case_does_not_matter(self, intent):
        checksummed = replace(intent, account=Account.from_key(b"\x01" * 32).address)
        lowered = replace(checksummed, account=checksummed.account.lower())
        assert hash_intent(checksummed, DOMAIN) == hash_intent(lowered, DOMAIN)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("merchant", "0x" + "44" * 20),
            ("token", "0x" + "55" * 20),
            ("amount", 40_000_001),
            ("deadline", NOW + 1),
            ("cart_hash", "0x" + "01" * 32),
            ("nonce", 1),
        ],
    )
    def test_every_field_changes_hash(self, intent, field, value):
        assert hash_intent(replace(intent, **{field: value}), DOMAIN) != hash_intent(intent, DOMAIN)

    def test_domain_binding(self, intent):
        base = hash_intent(intent, DOMAIN)
        assert hash_intent(intent, replace(DOMAIN, verifying_contract="0x" + "99" * 20)) != base
        assert hash_intent(intent, replace(DOMAIN, chain_id=8453)) != base
        assert hash_intent(intent, replace(DOMAIN, name="OtherVault")) != base
        assert hash_intent(intent, replace(DOMAIN, version="2")) != base


class TestSignatures:
    def test_sign_and_recover(self, intent, owner):
        signature = sign_intent(owner.key, intent, DOMAIN)
        assert len(signature_bytes(signature)) == 65
        assert recover_signer(hash_intent(intent, DOMAIN), signature) == owner.address.lower()
        assert verify_signature(hash_intent(intent, DOMAIN), signature, owner.address)

    def test_modified_intent_fails_verification(self, intent, owner):
        signature = sign_intent(owner.key, intent, DOMAIN)
        tampered = replace(intent, amount=intent.amount + 1)
        assert not verify_signature(hash_intent(tampered, DOMAIN), signature, owner.address)

    def test_wrong_length_never_raises(self, intent, owner):
        assert recover_signer(hash_intent(intent, DOMAIN), "0x1234") is None
        assert not verify_signature(hash_intent(intent, DOMAIN), b"\x00" * 64, owner.address)

    def test_bad_claimed_signer(self, intent, owner):
        signature = sign_intent(owner.key, intent, DOMAIN)
        assert not verify_signature(hash_intent(intent, DOMAIN), signature, "nobody")

    def test_undecodable_hex(self):
        assert signature_bytes("0xnothex") is None

    @pytest.mark.parametrize("signature", [12345, 1.5, ["0x00"], {"r": 1}])
    def test_non_text_input_is_present_but_invalid(self, intent, owner, signature):
        assert signature_bytes(signature) is None
        assert is_signature_present(signature)
        assert recover_signer(hash_intent(intent, DOMAIN), signature) is None
        assert not verify_signature(hash_intent(intent, DOMAIN), signature, owner.address)


def test_normalize_helpers():
    assert normalize_address("0X" + "AB" * 20) == "0x" + "ab" * 20
    assert normalize_hex32(b"\x01" * 32, "cart_hash") == "0x" + "01" * 32
    with pytest.raises(ValueError):
        normalize_hex32("0x1234", "cart_hash")
