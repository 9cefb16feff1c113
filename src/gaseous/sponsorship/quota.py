"""Spending quota state of a paymaster and its lazy window rollover."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from web3 import Web3

from ..config import SponsorshipDefaults


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f"not an address: {address!r}")
    return address.lower()


def roll_window(spent: int, window_start: float, now: float, window_seconds: int) -> Tuple[int, float]:
    """Return ``(spent, window_start)`` as seen at ``now``.

    Once ``now`` reaches ``window_start + window_seconds`` the counter is
    zero and the start moves forward by whole windows, so a long idle
    period still lands on a window boundary. A clock that went backwards
    leaves the window untouched.
    """
    elapsed = now - window_start
    if elapsed < window_seconds:
        return spent, window_start
    windows = int(elapsed // window_seconds)
    return 0, window_start + windows * window_seconds


@dataclass
class SpendingQuota:
    """Counters and policy of one paymaster. Amounts in wei, addresses lowercase.

    Not thread-safe on its own; :class:`SponsorshipEngine` owns the lock.
    """
    daily_limit: int
    monthly_limit: int
    per_user_limit: int
    daily_window_seconds: int
    monthly_window_seconds: int
    daily_window_start: float
    monthly_window_start: float
    daily_spent: int = 0
    monthly_spent: int = 0
    per_user_spent: Dict[str, int] = field(default_factory=dict)  # lifetime, never reset
    whitelisted_contracts: Set[str] = field(default_factory=set)
    whitelisted_users: Set[str] = field(default_factory=set)
    blacklisted_users: Set[str] = field(default_factory=set)
    whitelist_enabled: bool = False
    paused: bool = False

    @classmethod
    def fresh(cls, now: float, defaults: Optional[SponsorshipDefaults] = None) -> "SpendingQuota":
        defaults = defaults or SponsorshipDefaults()
        return cls(
            daily_limit=defaults.daily_limit,
            monthly_limit=defaults.monthly_limit,
            per_user_limit=defaults.per_user_limit,
            daily_window_seconds=defaults.daily_window_seconds,
            monthly_window_seconds=defaults.monthly_window_seconds,
            daily_window_start=now,
            monthly_window_start=now,
        )

    def daily_at(self, now: float) -> Tuple[int, float]:
        return roll_window(self.daily_spent, self.daily_window_start, now, self.daily_window_seconds)

    def monthly_at(self, now: float) -> Tuple[int, float]:
        return roll_window(self.monthly_spent, self.monthly_window_start, now, self.monthly_window_seconds)

    def user_spent(self, user: str) -> int:
        return self.per_user_spent.get(normalize_address(user), 0)

    def apply_rollover(self, now: float) -> bool:
        """Reset expired windows in place. Returns True when anything reset."""
        daily = self.daily_at(now)
        monthly = self.monthly_at(now)
        rolled = (
            daily[1] != self.daily_window_start or monthly[1] != self.monthly_window_start
        )
        self.daily_spent, self.daily_window_start = daily
        self.monthly_spent, self.monthly_window_start = monthly
        return rolled

    def add_spend(self, user: str, value: int) -> None:
        key = normalize_address(user)
        self.daily_spent += value
        self.monthly_spent += value
        self.per_user_spent[key] = self.per_user_spent.get(key, 0) + value

    def remove_spend(self, user: str, value: int, charged_at: float) -> None:
        """Undo :meth:`add_spend` made at ``charged_at``. Windows must already be rolled."""
        key = normalize_address(user)
        if charged_at >= self.daily_window_start:
            self.daily_spent = max(0, self.daily_spent - value)
        if charged_at >= self.monthly_window_start:
            self.monthly_spent = max(0, self.monthly_spent - value)
        self.per_user_spent[key] = max(0, self.per_user_spent.get(key, 0) - value)
