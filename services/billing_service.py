"""
Billing Service - MercadoPago checkout preferences, cancellation and payment history
"""

import logging
from datetime import timedelta
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from crud.subscription import SubscriptionStore
from database_models import Subscription, User
from services.exceptions import NotFoundError
from services.mercadopago_client import PaymentProvider, build_external_reference
from services.plans import get_plan, pricing
from utils.clock import Clock, as_utc

logger = logging.getLogger(__name__)


class BillingService:
    """
    Service class for handling billing-related business logic.
    Payment confirmation itself happens in the webhook processor; this class
    only prepares checkouts and reads/cancels what the user owns.
    """

    def __init__(self, db: AsyncSession, provider: PaymentProvider, clock: Clock):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
            provider: payment provider used to create checkout preferences
            clock: source of the current instant
        """
        self.db = db
        self.provider = provider
        self.clock = clock
        self.store = SubscriptionStore(db)

    def plan_catalog(self) -> dict:
        return pricing()

    def _preference_is_fresh(self, subscription: Subscription, now) -> bool:
        if not subscription.provider_preference_id or not subscription.checkout_url:
            return False
        created_at = as_utc(subscription.created_at)
        return created_at is not None and now - created_at < timedelta(hours=settings.preference_ttl_hours)

    async def create_payment_preference(self, user: User, plan_type) -> dict:
        """
        Create (or reuse) a checkout preference and the matching pending subscription.

        Args:
            user: the paying user
            plan_type: "monthly" or "annual"

        Returns:
            {"preferenceId", "checkoutUrl", "subscriptionId", "plan"}

        Raises:
            InvalidPlanError: unknown plan type
            PaymentProviderError: MercadoPago failed or is not configured
        """
        plan = get_plan(plan_type)
        user_id = user.id
        now = self.clock.now()
        ttl = timedelta(hours=settings.preference_ttl_hours)

        pending = await self.store.latest_pending_subscription(user_id, plan.plan_type)
        if pending is not None and self._preference_is_fresh(pending, now):
            logger.info(f"Reusing preference {pending.provider_preference_id} for user {user_id}")
            return self._preference_response(pending)

        preference = await self.provider.create_preference(
            title=plan.title,
            description=f"Suscripción {plan.plan_type.value} a DriveMetrics Pro",
            price=plan.price,
            currency=plan.currency,
            payer_email=user.email,
            external_reference=build_external_reference(user_id, plan.plan_type, now),
            expires_from=now,
            expires_at=now + ttl,
        )
        logger.info(f"Created preference {preference.id} ({plan.plan_type.value}) for user {user_id}")

        if pending is not None:
            subscription = await self.store.refresh_preference(
                pending, preference.id, preference.checkout_url, now
            )
            return self._preference_response(subscription)

        try:
            subscription = await self.store.create_pending_subscription(
                user_id,
                plan.plan_type,
                amount=plan.price,
                provider_preference_id=preference.id,
                currency=plan.currency,
                checkout_url=preference.checkout_url,
                now=now,
            )
        except IntegrityError:
            # A concurrent request created the user's pending subscription first
            await self.db.rollback()
            subscription = await self.store.latest_pending_subscription(user_id)
            if subscription is None:
                raise
            logger.info(f"Pending subscription race for user {user_id}; using subscription {subscription.id}")
        return self._preference_response(subscription)

    def _preference_response(self, subscription: Subscription) -> dict:
        return {
            "preferenceId": subscription.provider_preference_id,
            "checkoutUrl": subscription.checkout_url,
            "subscriptionId": subscription.id,
            "plan": get_plan(subscription.plan_type).to_dict(),
        }

    async def cancel_subscription(self, user: User) -> dict:
        """
        User-initiated cancellation. Access ends immediately; pending checkouts are dropped.
        """
        user_id = user.id
        changed = await self.store.cancel_user_subscription(user_id, self.clock.now())
        if changed:
            logger.info(f"User {user_id} cancelled their subscription")
        else:
            logger.info(f"User {user_id} was already cancelled")
        return {"status": user.subscription_status, "changed": changed}

    async def payment_history(self, user_id: int) -> List[dict]:
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        rows = await self.store.list_payments(user_id)
        return [
            {
                "id": payment.id,
                "providerPaymentId": payment.provider_payment_id,
                "subscriptionId": payment.subscription_id,
                "planType": plan_type,
                "amount": payment.amount,
                "currency": payment.currency,
                "status": payment.status,
                "paymentMethod": payment.payment_method,
                "description": payment.description,
                "paidAt": as_utc(payment.paid_at).isoformat() if payment.paid_at else None,
                "createdAt": as_utc(payment.created_at).isoformat() if payment.created_at else None,
            }
            for payment, plan_type in rows
        ]
