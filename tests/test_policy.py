"""Tests for policies and allowlists."""

import pytest
from eth_account import Account

from intentvault.errors import InvalidPolicyError, UnauthorizedError
from intentvault.policy import MAX_AMOUNT, ZERO_POLICY, AllowlistStore, Policy, PolicyStore


@pytest.fixture
def owner():
    return Account.create().address


class TestPolicy:
    def test_valid(self):
        Policy(monthly_cap=300, weekly_cap=100, per_tx_cap=50).validate()

    def test_zero_policy_is_valid(self):
        ZERO_POLICY.validate()

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            (dict(monthly_cap=300, weekly_cap=100, per_tx_cap=150), "exceeds weekly_cap"),
            (dict(monthly_cap=40, weekly_cap=100, per_tx_cap=50), "exceeds monthly_cap"),
            (dict(monthly_cap=300, weekly_cap=-1, per_tx_cap=0), "must be >= 0"),
            (dict(monthly_cap=300.0, weekly_cap=100, per_tx_cap=50), "integer"),
            (dict(monthly_cap=2**64, weekly_cap=2**64, per_tx_cap=2**64), "must be <="),
        ],
    )
    def test_invalid(self, kwargs, match):
        with pytest.raises(InvalidPolicyError, match=match):
            Policy(**kwargs).validate()

    def test_largest_storable_cap(self):
        Policy(monthly_cap=MAX_AMOUNT, weekly_cap=MAX_AMOUNT, per_tx_cap=MAX_AMOUNT).validate()

    def test_dict_round_trip(self):
        policy = Policy(monthly_cap=3, weekly_cap=2, per_tx_cap=1, require_user_sig=True)
        assert Policy.from_dict(policy.to_dict()) == policy


class TestPolicyStore:
    def test_unset_account_has_zero_policy(self, state, owner):
        assert PolicyStore(state).get_policy(owner) == ZERO_POLICY

    def test_set_replaces_atomically(self, state, owner):
        store = PolicyStore(state)
        store.set_policy(owner, Policy(monthly_cap=300, weekly_cap=100, per_tx_cap=50), caller=owner)
        store.set_policy(owner, Policy(monthly_cap=30, weekly_cap=20, per_tx_cap=10, require_user_sig=True), caller=owner)

        assert store.get_policy(owner) == Policy(monthly_cap=30, weekly_cap=20, per_tx_cap=10, require_user_sig=True)
        assert store.get_policy(owner.lower()) == store.get_policy(owner)

    def test_invalid_policy_not_stored(self, state, owner):
        store = PolicyStore(state)
        with pytest.raises(InvalidPolicyError):
            store.set_policy(owner, Policy(monthly_cap=10, weekly_cap=100, per_tx_cap=50), caller=owner)
        assert store.get_policy(owner) == ZERO_POLICY

    def test_oversized_cap_rejected_before_storage(self, state, owner):
        store = PolicyStore(state)
        huge = Policy(monthly_cap=2**64, weekly_cap=2**64, per_tx_cap=2**64)
        with pytest.raises(InvalidPolicyError, match="must be <="):
            store.set_policy(owner, huge, caller=owner)
        assert store.get_policy(owner) == ZERO_POLICY

    def test_non_owner_rejected(self, state, owner):
        with pytest.raises(UnauthorizedError):
            PolicyStore(state).set_policy(owner, Policy(), caller=Account.create().address)

    def test_garbage_caller_rejected(self, state, owner):
        with pytest.raises(UnauthorizedError, match="invalid caller"):
            PolicyStore(state).set_policy(owner, Policy(), caller="root")


class TestAllowlistStore:
    def test_add_and_remove_merchant(self, state, owner):
        store = AllowlistStore(state)
        merchant = Account.create().address

        store.set_merchant_allowed(owner, merchant, True, caller=owner)
        assert store.is_merchant_allowed(owner, merchant)
        assert store.list_merchants(owner) == [merchant.lower()]

        store.set_merchant_allowed(owner, merchant, False, caller=owner)
        assert not store.is_merchant_allowed(owner, merchant)
        assert store.list_merchants(owner) == []

    def test_agents_are_separate_from_merchants(self, state, owner):
        store = AllowlistStore(state)
        party = Account.create().address
        store.set_agent_allowed(owner, party, True, caller=owner)

        assert store.is_agent_allowed(owner, party)
        assert not store.is_merchant_allowed(owner, party)

    def test_allowlists_are_per_account(self, state, owner):
        store = AllowlistStore(state)
        other = Account.create().address
        merchant = Account.create().address
        store.set_merchant_allowed(owner, merchant, True, caller=owner)
        assert not store.is_merchant_allowed(other, merchant)

    def test_non_owner_rejected(self, state, owner):
        with pytest.raises(UnauthorizedError):
            AllowlistStore(state).set_agent_allowed(
                owner, Account.create().address, True, caller=Account.create().address
            )

    def test_invalid_lookup_is_false(self, state, owner):
        assert not AllowlistStore(state).is_merchant_allowed(owner, "nope")

    def test_idempotent_add(self, state, owner):
        store = AllowlistStore(state)
        merchant = Account.create().address
        store.set_merchant_allowed(owner, merchant, True, caller=owner)
        store.set_merchant_allowed(owner, merchant, True, caller=owner)
        assert len(store.list_merchants(owner)) == 1
