from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from utils.dates import add_months


class SubscriptionStatus(str, Enum):
    """User-level subscription status."""
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionRowStatus(str, Enum):
    """Status of a single Subscription row."""
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PlanType(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value) -> "PlanType":
        """Accepts enum members or case-insensitive strings; raises ValueError otherwise."""
        if isinstance(value, cls):
            return value
        return cls(str(value or "").strip().lower())


class AuthProvider(str, Enum):
    PASSWORD = "password"
    GOOGLE = "google"


@dataclass(frozen=True)
class Plan:
    plan_type: PlanType
    title: str
    price: float
    currency: str
    months: int

    def end_at(self, paid_at: datetime) -> datetime:
        return subscription_end_at(self.plan_type, paid_at)

    def to_dict(self) -> dict:
        return {
            "planType": self.plan_type.value,
            "title": self.title,
            "price": self.price,
            "currency": self.currency,
            "months": self.months,
        }


PLAN_MONTHS = {
    PlanType.MONTHLY: 1,
    PlanType.ANNUAL: 12,
}

PLAN_TITLES = {
    PlanType.MONTHLY: "DriveMetrics Pro - Mensual",
    PlanType.ANNUAL: "DriveMetrics Pro - Anual",
}


def subscription_end_at(plan_type: PlanType, paid_at: datetime) -> datetime:
    """Calendar-based period end: one month or one year after paid_at."""
    return add_months(paid_at, PLAN_MONTHS[PlanType.parse(plan_type)])
