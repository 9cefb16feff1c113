"""Paymaster sponsorship quotas."""

from .quota import SpendingQuota, roll_window
from .engine import QuotaEvent, SponsorshipDecision, SponsorshipEngine, estimate_max_cost

__all__ = [
    "SpendingQuota",
    "roll_window",
    "QuotaEvent",
    "SponsorshipDecision",
    "SponsorshipEngine",
    "estimate_max_cost",
]
