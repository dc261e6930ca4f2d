# plans.py
from __future__ import annotations  # postpone annotation evaluation
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    # For editors only; never runs at runtime
    from stores import UserProfile


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"


def parse_plan(value: str | None) -> Plan:
    # unknown / empty values from old rows fall back to free
    try:
        return Plan((value or "").strip().lower())
    except ValueError:
        return Plan.FREE


def is_pro(profile: "UserProfile | None") -> bool:
    return profile is not None and profile.plan is Plan.PRO


def has_used_trial(profile: "UserProfile") -> bool:
    return profile.trial_end_date is not None


def select_price_id(profile: "UserProfile", regular_price_id: str, trial_price_id: str) -> str:
    """Trial price for users who never had a trial, regular price otherwise."""
    return regular_price_id if has_used_trial(profile) else trial_price_id
