"""
Access policy for the trial / paid subscription gate.

evaluate() is a pure function of the user record and the current instant.
It never raises: unexpected states resolve to a denied decision.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from config import settings
from models.subscription import SubscriptionStatus
from utils.clock import as_utc
from utils.dates import DAY, HOUR, ceil_units


class AccessLevel(str, Enum):
    FULL = "full"
    DENIED = "denied"


class AccessMode(str, Enum):
    TRIAL = "trial"
    PAID = "paid"
    EXPIRED_TRIAL = "expired-trial"
    EXPIRED_PAID = "expired-paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AccessDecision:
    access: AccessLevel
    mode: AccessMode
    days_left: int = 0
    hours_left: int = 0
    ends_at: Optional[datetime] = None
    # The caller must durably move the user to `expired`
    requires_expiry: bool = False

    @property
    def has_access(self) -> bool:
        return self.access is AccessLevel.FULL

    def to_dict(self) -> dict:
        return {
            "access": self.access.value,
            "mode": self.mode.value,
            "daysLeft": self.days_left,
            "hoursLeft": self.hours_left,
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
        }


def _full(mode: AccessMode, now: datetime, ends_at: datetime) -> AccessDecision:
    remaining = ends_at - now
    return AccessDecision(
        access=AccessLevel.FULL,
        mode=mode,
        days_left=ceil_units(remaining, DAY),
        hours_left=ceil_units(remaining, HOUR),
        ends_at=ends_at,
    )


def _denied(mode: AccessMode, ends_at: Optional[datetime] = None, requires_expiry: bool = False) -> AccessDecision:
    return AccessDecision(
        access=AccessLevel.DENIED,
        mode=mode,
        ends_at=ends_at,
        requires_expiry=requires_expiry,
    )


class AccessPolicy:
    """
    Decides whether a user currently has access.

    Trial window is [trial_start_at, trial_start_at + trial_days); paid access
    lasts until subscription_end_at. Both upper bounds are excluded.
    """

    def __init__(self, trial_days: Optional[int] = None):
        self.trial_days = settings.trial_days if trial_days is None else trial_days

    def trial_end(self, user) -> Optional[datetime]:
        start = as_utc(getattr(user, "trial_start_at", None))
        if start is None:
            return None
        return start + timedelta(days=self.trial_days)

    def evaluate(self, user, now: datetime) -> AccessDecision:
        now = as_utc(now)
        status = getattr(user, "subscription_status", None)

        if status == SubscriptionStatus.TRIAL:
            start = as_utc(getattr(user, "trial_start_at", None))
            if start is None:
                return _denied(AccessMode.EXPIRED)
            trial_end = start + timedelta(days=self.trial_days)
            if now >= trial_end:
                return _denied(AccessMode.EXPIRED_TRIAL, trial_end, requires_expiry=True)
            # Clock skew before the trial started counts as the full window
            return _full(AccessMode.TRIAL, max(now, start), trial_end)

        if status == SubscriptionStatus.ACTIVE:
            end = as_utc(getattr(user, "subscription_end_at", None))
            if end is not None and now < end:
                return _full(AccessMode.PAID, now, end)
            return _denied(AccessMode.EXPIRED_PAID, end, requires_expiry=True)

        if status == SubscriptionStatus.CANCELLED:
            return _denied(AccessMode.CANCELLED, as_utc(getattr(user, "subscription_end_at", None)))

        return _denied(AccessMode.EXPIRED, as_utc(getattr(user, "subscription_end_at", None)))


def get_access_policy() -> AccessPolicy:
    """FastAPI dependency building the policy from settings."""
    return AccessPolicy(settings.trial_days)


async def resolve_access(store, policy: AccessPolicy, user, now: datetime) -> AccessDecision:
    """
    Evaluate access for a loaded user and persist the `expired` transition
    when the decision calls for it. The decision itself is returned unchanged.
    """
    decision = policy.evaluate(user, now)
    if decision.requires_expiry:
        await store.mark_expired(user.id, now, policy.trial_days)
    return decision
