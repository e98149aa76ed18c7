"""
Webhook processing for MercadoPago payment notifications.

The provider may deliver the same notification several times and
concurrently. Each delivery is processed in its own transaction; the payment
ledger's unique provider_payment_id makes repeated deliveries no-ops.
"""
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from crud.subscription import SubscriptionStore
from services.exceptions import SubscriptionStateError
from services.mercadopago_client import PaymentProvider, ProviderPayment, parse_external_reference
from services.plans import get_plan
from utils.clock import Clock

logger = logging.getLogger(__name__)

APPROVED = "approved"
FAILED_STATUSES = ("rejected", "cancelled")


class WebhookResult(str, Enum):
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    INVALID_REFERENCE = "invalid_reference"
    UNKNOWN_USER = "unknown_user"
    UNHANDLED_STATUS = "unhandled_status"
    FAILED = "failed"


class ProviderNotification(BaseModel):
    type: str
    provider_payment_id: str

    @classmethod
    def from_request(cls, body: Optional[dict], query: Optional[dict] = None) -> Optional["ProviderNotification"]:
        """
        Accepts the JSON webhook shape ({"type", "data": {"id"}}), the legacy
        IPN query shape (?topic=payment&id=...) and {"type", "providerPaymentId"}.
        Returns None when no type or payment id can be found.
        """
        body = body if isinstance(body, dict) else {}
        query = query or {}

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        notification_type = (
            body.get("type")
            or body.get("topic")
            or body.get("action")
            or query.get("type")
            or query.get("topic")
        )
        payment_id = (
            data.get("id")
            or body.get("providerPaymentId")
            or body.get("provider_payment_id")
            or body.get("id")
            or query.get("data.id")
            or query.get("id")
        )
        if not notification_type or not payment_id:
            return None
        return cls(type=str(notification_type).strip().lower(), provider_payment_id=str(payment_id).strip())

    @property
    def is_payment(self) -> bool:
        # "payment", "payment.created", "payment.updated"
        return self.type.split(".")[0] == "payment"


class WebhookProcessor:
    """Applies provider payment results to the subscription store."""

    def __init__(self, session_factory: async_sessionmaker, provider: PaymentProvider, clock: Clock):
        self.session_factory = session_factory
        self.provider = provider
        self.clock = clock

    async def handle_provider_notification(self, notification: ProviderNotification) -> WebhookResult:
        """
        Process one notification. Never raises: failures are logged and
        reported as WebhookResult.FAILED so the HTTP layer can still answer 200.
        """
        try:
            return await self._process(notification)
        except Exception as e:
            logger.error(
                f"Webhook processing failed for payment {notification.provider_payment_id}: {e}",
                exc_info=True,
            )
            return WebhookResult.FAILED

    async def _process(self, notification: ProviderNotification) -> WebhookResult:
        if not notification.is_payment:
            logger.info(f"Ignoring {notification.type} notification {notification.provider_payment_id}")
            return WebhookResult.IGNORED

        payment = await self.provider.get_payment(notification.provider_payment_id)
        logger.info(f"Payment {payment.id} reported as {payment.status!r}")

        reference = parse_external_reference(payment.external_reference)
        if reference is None:
            logger.warning(
                f"Payment {payment.id} has malformed external reference {payment.external_reference!r}"
            )
            return WebhookResult.INVALID_REFERENCE
        user_id, plan_type = reference

        if payment.status == APPROVED:
            handler = self._apply_approved
        elif payment.status in FAILED_STATUSES:
            handler = self._apply_failed
        else:
            logger.info(f"Payment {payment.id} status {payment.status!r} needs no action yet")
            return WebhookResult.UNHANDLED_STATUS

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    store = SubscriptionStore(session)
                    if await store.get_payment_by_provider_id(payment.id) is not None:
                        logger.info(f"Payment {payment.id} already recorded; skipping")
                        return WebhookResult.DUPLICATE
                    return await handler(store, payment, user_id, plan_type)
        except (IntegrityError, SubscriptionStateError) as e:
            # Lost a race with a concurrent delivery; the transaction was rolled back
            return await self._resolve_conflict(payment, e)

    async def _resolve_conflict(self, payment: ProviderPayment, error: Exception) -> WebhookResult:
        async with self.session_factory() as session:
            recorded = await SubscriptionStore(session).get_payment_by_provider_id(payment.id)
        if recorded is not None:
            logger.info(f"Payment {payment.id} recorded concurrently; skipping")
            return WebhookResult.DUPLICATE
        logger.error(f"Payment {payment.id} could not be applied: {error}")
        return WebhookResult.FAILED

    async def _apply_approved(self, store: SubscriptionStore, payment: ProviderPayment,
                              user_id: int, plan_type) -> WebhookResult:
        user = await store.get_user(user_id)
        if user is None:
            logger.warning(f"Approved payment {payment.id} references unknown user {user_id}")
            return WebhookResult.UNKNOWN_USER

        plan = get_plan(plan_type)
        if payment.amount and payment.amount < plan.price:
            logger.warning(
                f"Payment {payment.id} amount {payment.amount} is below the {plan_type.value} price {plan.price}"
            )

        paid_at = payment.approved_at or self.clock.now()
        end_at = plan.end_at(paid_at)

        pending = await store.latest_pending_subscription(user_id, plan_type)
        if pending is None:
            # Preference created outside this service (or its row was superseded)
            pending = await store.create_pending_subscription(
                user_id,
                plan_type,
                amount=payment.amount or plan.price,
                provider_preference_id=None,
                currency=payment.currency,
                now=paid_at,
            )

        subscription = await store.activate_subscription(pending.id, paid_at, end_at, payment.id)
        await store.record_payment(
            user_id=user_id,
            subscription_id=subscription.id,
            provider_payment_id=payment.id,
            amount=payment.amount or subscription.amount,
            status=payment.status,
            paid_at=paid_at,
            currency=payment.currency,
            payment_method=payment.payment_method,
            description=f"{plan.title} (valid until {end_at.date().isoformat()})",
        )
        return WebhookResult.ACTIVATED

    async def _apply_failed(self, store: SubscriptionStore, payment: ProviderPayment,
                            user_id: int, plan_type) -> WebhookResult:
        # Rejections leave no ledger row; the cancelled subscription carries the payment id instead
        if await store.get_subscription_by_payment_id(payment.id) is not None:
            logger.info(f"Payment {payment.id} {payment.status} already applied; skipping")
            return WebhookResult.DUPLICATE

        pending = await store.latest_pending_subscription(user_id, plan_type)
        if pending is None:
            logger.info(f"Payment {payment.id} {payment.status}: no pending subscription for user {user_id}")
            return WebhookResult.IGNORED

        await store.cancel_pending_subscription(pending.id, payment.id)
        logger.info(f"Payment {payment.id} {payment.status}: cancelled pending subscription {pending.id}")
        return WebhookResult.CANCELLED
