"""
Subscription Router - plans, checkout preferences, status and the access gate
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_access
from crud.subscription import SubscriptionStore
from database import get_db
from database_models import User
from services.access_policy import AccessDecision, AccessPolicy, get_access_policy, resolve_access
from services.billing_service import BillingService
from services.exceptions import InvalidPlanError, PaymentProviderError
from services.mercadopago_client import PaymentProvider, get_payment_provider
from utils.clock import Clock, as_utc, get_clock
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class PaymentPreferenceRequest(BaseModel):
    planType: str
    userId: Optional[Union[int, str]] = None


def _isoformat(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _is_other_user(user: User, requested_id) -> bool:
    if requested_id is None or str(requested_id).strip() == "":
        return False
    return str(requested_id).strip() != str(user.id)


@subscription_router.get("/plans")
async def get_plans(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Public pricing catalog"""
    return success_response(data=BillingService(db, None, clock).plan_catalog())


@subscription_router.post("/payment-preference")
async def create_payment_preference(
    request: PaymentPreferenceRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    clock: Clock = Depends(get_clock),
):
    """
    Create a MercadoPago checkout preference for the current user.

    userId is accepted for older clients but must match the authenticated user.
    """
    if _is_other_user(current_user, request.userId):
        logger.warning(f"User {current_user.id} requested a preference for user {request.userId}")
        return error_response("forbidden", status=403, message="Cannot create a payment for another user")

    try:
        data = await BillingService(db, provider, clock).create_payment_preference(current_user, request.planType)
    except InvalidPlanError as e:
        return error_response("invalid_plan", status=400, message=str(e))
    except PaymentProviderError as e:
        logger.error(f"Preference creation failed for user {current_user.id}: {e}")
        return error_response("payment_provider_error", status=502, message="Payment provider unavailable")

    return success_response(data=data, message="Payment preference created")


@subscription_router.get("/status")
async def get_subscription_status(
    userId: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: AccessPolicy = Depends(get_access_policy),
):
    """Subscription status with remaining time; overdue users are moved to `expired` here."""
    if _is_other_user(current_user, userId):
        return error_response("forbidden", status=403, message="Cannot read another user's subscription")

    store = SubscriptionStore(db)
    user = await store.get_user(current_user.id)
    if user is None:
        return error_response("not_found", status=404, message="User not found")

    decision = await resolve_access(store, policy, user, clock.now())
    return success_response(data={
        "status": user.subscription_status,
        "mode": decision.mode.value,
        "access": decision.access.value,
        "daysLeft": decision.days_left,
        "hoursLeft": decision.hours_left,
        "trialEndsAt": _isoformat(policy.trial_end(user)),
        "subscriptionEndAt": _isoformat(user.subscription_end_at),
        "lastPaymentAt": _isoformat(user.last_payment_at),
    })


@subscription_router.get("/access")
async def check_access(decision: AccessDecision = Depends(require_access)):
    """
    Access gate for premium features.
    Denied users get 402 with the decision and the pricing catalog.
    """
    return success_response(data={"subscription": decision.to_dict()})


@subscription_router.post("/cancel")
async def cancel_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    data = await BillingService(db, None, clock).cancel_subscription(current_user)
    return success_response(data=data, message="Subscription cancelled")
