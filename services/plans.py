"""Pricing catalog for the paid plans."""
from typing import List

from config import settings
from models.subscription import PLAN_MONTHS, PLAN_TITLES, Plan, PlanType
from services.exceptions import InvalidPlanError


def get_plan(plan_type) -> Plan:
    """Look up a plan by type. Raises InvalidPlanError for anything outside the catalog."""
    try:
        plan_type = PlanType.parse(plan_type)
    except ValueError:
        raise InvalidPlanError(f"Invalid plan type: {plan_type!r}. Expected 'monthly' or 'annual'")

    price = settings.monthly_price if plan_type is PlanType.MONTHLY else settings.annual_price
    return Plan(
        plan_type=plan_type,
        title=PLAN_TITLES[plan_type],
        price=float(price),
        currency=settings.currency,
        months=PLAN_MONTHS[plan_type],
    )


def plan_catalog() -> List[Plan]:
    return [get_plan(plan_type) for plan_type in PlanType]


def pricing() -> dict:
    """Catalog payload shown on the plans page and alongside every access denial."""
    return {
        "plans": [plan.to_dict() for plan in plan_catalog()],
        "trialDays": settings.trial_days,
        "currency": settings.currency,
    }
