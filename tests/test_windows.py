"""Tests for rolling spend windows."""

import pytest

from intentvault.errors import MonthlyCapExceededError, WeeklyCapExceededError
from intentvault.policy import Policy
from intentvault.windows import (
    MONTH_SECONDS,
    WEEK_SECONDS,
    SpendWindow,
    SpendWindowAccountant,
    remaining_monthly,
    remaining_weekly,
    reserve,
    roll_if_expired,
)


T0 = 1_700_000_000
POLICY = Policy(monthly_cap=300, weekly_cap=100, per_tx_cap=50)


class TestRollover:
    def test_first_spend_initializes_both_halves(self):
        window = roll_if_expired(SpendWindow(), T0)
        assert window == SpendWindow(week_start=T0, week_spent=0, month_start=T0, month_spent=0)
        assert window.is_initialized

    def test_week_rolls_at_exact_boundary(self):
        window = SpendWindow(week_start=T0, week_spent=80, month_start=T0, month_spent=80)
        assert roll_if_expired(window, T0 + WEEK_SECONDS - 1) == window

        rolled = roll_if_expired(window, T0 + WEEK_SECONDS)
        assert rolled.week_start == T0 + WEEK_SECONDS
        assert rolled.week_spent == 0
        assert rolled.month_spent == 80
        assert rolled.month_start == T0

    def test_month_rolls_independently(self):
        window = SpendWindow(week_start=T0 + 28 * 86400, week_spent=10, month_start=T0, month_spent=250)
        rolled = roll_if_expired(window, T0 + MONTH_SECONDS)
        assert rolled.month_start == T0 + MONTH_SECONDS
        assert rolled.month_spent == 0
        assert rolled.week_spent == 10

    def test_restart_is_from_spend_time_not_calendar(self):
        window = SpendWindow(week_start=T0, week_spent=50, month_start=T0, month_spent=50)
        later = T0 + 3 * WEEK_SECONDS + 12345
        assert roll_if_expired(window, later).week_start == later


class TestReserve:
    def test_charges_both_halves(self):
        window = reserve(roll_if_expired(SpendWindow(), T0), 40, POLICY)
        assert window.week_spent == 40
        assert window.month_spent == 40

    def test_weekly_exact_cap_allowed(self):
        window = SpendWindow(week_start=T0, week_spent=60, month_start=T0, month_spent=60)
        assert reserve(window, 40, POLICY).week_spent == 100

    def test_weekly_checked_before_monthly(self):
        window = SpendWindow(week_start=T0, week_spent=90, month_start=T0, month_spent=295)
        with pytest.raises(WeeklyCapExceededError) as exc:
            reserve(window, 20, POLICY)
        assert exc.value.spent == 90
        assert exc.value.limit == 100

    def test_monthly(self):
        window = SpendWindow(week_start=T0, week_spent=0, month_start=T0, month_spent=290)
        with pytest.raises(MonthlyCapExceededError, match="remaining monthly allowance 10"):
            reserve(window, 20, POLICY)

    def test_window_is_immutable(self):
        window = SpendWindow(week_start=T0, week_spent=10, month_start=T0, month_spent=10)
        reserve(window, 5, POLICY)
        assert window.week_spent == 10


class TestRemaining:
    def test_projects_rollover(self):
        window = SpendWindow(week_start=T0, week_spent=100, month_start=T0, month_spent=100)
        assert remaining_weekly(window, POLICY, T0) == 0
        assert remaining_weekly(window, POLICY, T0 + WEEK_SECONDS) == 100
        assert remaining_monthly(window, POLICY, T0 + WEEK_SECONDS) == 200

    def test_floored_at_zero_after_cap_reduction(self):
        window = SpendWindow(week_start=T0, week_spent=80, month_start=T0, month_spent=80)
        lowered = Policy(monthly_cap=300, weekly_cap=60, per_tx_cap=50)
        assert remaining_weekly(window, lowered, T0) == 0


def test_accountant_round_trip(state):
    window = SpendWindow(week_start=T0, week_spent=7, month_start=T0 - 5, month_spent=9)
    account = "0x" + "aa" * 20
    with state.transaction() as conn:
        assert SpendWindowAccountant.load(conn, account) == SpendWindow()
        SpendWindowAccountant.save(conn, account, window)
    with state.read() as conn:
        assert SpendWindowAccountant.load(conn, account) == window
