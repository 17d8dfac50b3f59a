"""
Rolling weekly/monthly spend accounting.

Windows are trailing periods that restart from the first spend after they
lapse, not calendar weeks or months. Rollover is evaluated lazily at the
start of each spend attempt; nothing runs on a timer.

Note: caps are compared at spend time only. Lowering a cap below what the
current window has already spent leaves the window over cap until it
rolls; further spends fail, but nothing already spent is re-validated.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from .errors import MonthlyCapExceededError, WeeklyCapExceededError
from .policy import Policy


WEEK_SECONDS = 7 * 24 * 60 * 60
MONTH_SECONDS = 30 * 24 * 60 * 60


@dataclass(frozen=True)
class SpendWindow:
    week_start: int = 0
    week_spent: int = 0
    month_start: int = 0
    month_spent: int = 0

    @property
    def is_initialized(self) -> bool:
        return self.week_start != 0


def roll_if_expired(window: SpendWindow, now: int) -> SpendWindow:
    """Return ``window`` with lapsed halves restarted at ``now``."""
    if not window.is_initialized:
        return SpendWindow(week_start=now, week_spent=0, month_start=now, month_spent=0)
    rolled = window
    if now - rolled.week_start >= WEEK_SECONDS:
        rolled = replace(rolled, week_start=now, week_spent=0)
    if now - rolled.month_start >= MONTH_SECONDS:
        rolled = replace(rolled, month_start=now, month_spent=0)
    return rolled


def reserve(window: SpendWindow, amount: int, policy: Policy) -> SpendWindow:
    """Charge ``amount`` to both halves or raise the first cap it breaks."""
    if window.week_spent + amount > policy.weekly_cap:
        raise WeeklyCapExceededError(amount, policy.weekly_cap, window.week_spent)
    if window.month_spent + amount > policy.monthly_cap:
        raise MonthlyCapExceededError(amount, policy.monthly_cap, window.month_spent)
    return replace(
        window,
        week_spent=window.week_spent + amount,
        month_spent=window.month_spent + amount,
    )


def remaining_weekly(window: SpendWindow, policy: Policy, now: int) -> int:
    projected = roll_if_expired(window, now)
    return max(0, policy.weekly_cap - projected.week_spent)


def remaining_monthly(window: SpendWindow, policy: Policy, now: int) -> int:
    projected = roll_if_expired(window, now)
    return max(0, policy.monthly_cap - projected.month_spent)


class SpendWindowAccountant:
    """Loads and stores windows inside a caller-owned transaction."""

    @staticmethod
    def load(conn, account: str) -> SpendWindow:
        row = conn.execute(
            """
            SELECT week_start, week_spent, month_start, month_spent
            FROM spend_windows WHERE account = ?
            """,
            (account,),
        ).fetchone()
        if row is None:
            return SpendWindow()
        return SpendWindow(
            week_start=row["week_start"],
            week_spent=row["week_spent"],
            month_start=row["month_start"],
            month_spent=row["month_spent"],
        )

    @staticmethod
    def save(conn, account: str, window: SpendWindow) -> None:
        conn.execute(
            """
            INSERT INTO spend_windows (account, week_start, week_spent, month_start, month_spent)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(account) DO UPDATE SET
                week_start = excluded.week_start,
                week_spent = excluded.week_spent,
                month_start = excluded.month_start,
                month_spent = excluded.month_spent
            """,
            (account, window.week_start, window.week_spent, window.month_start, window.month_spent),
        )
