"""
Payments Router - MercadoPago webhook and payment history
Webhook always answers 200 so MercadoPago does not retry on our errors
"""

import hmac
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import get_current_user
from config import settings
from database import get_db, get_session_factory
from database_models import User
from services.billing_service import BillingService
from services.mercadopago_client import PaymentProvider, get_payment_provider
from services.webhook_processor import ProviderNotification, WebhookProcessor
from utils.clock import Clock, get_clock
from utils.responses import success_response

logger = logging.getLogger(__name__)

payments_router = APIRouter(prefix="/api/payments", tags=["payments"])


def _acknowledge(ok: bool, **content) -> JSONResponse:
    return JSONResponse(status_code=200, content={"ok": ok, "received": True, **content})


@payments_router.post("/webhook")
async def mercadopago_webhook(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider: PaymentProvider = Depends(get_payment_provider),
    clock: Clock = Depends(get_clock),
):
    """
    Handle MercadoPago payment notifications.

    The notification only carries the payment id; the payment itself is
    fetched from MercadoPago before anything is written. When
    MP_WEBHOOK_SECRET is set the notification URL must carry ?secret=.
    """
    if settings.mp_webhook_secret:
        supplied = request.query_params.get("secret", "")
        if not hmac.compare_digest(supplied.encode(), settings.mp_webhook_secret.encode()):
            logger.warning("Rejected MercadoPago webhook with a wrong secret")
            return _acknowledge(False, error="invalid_secret")

    raw = await request.body()
    body = {}
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            logger.warning(f"Webhook body is not JSON: {raw[:200]!r}")

    notification = ProviderNotification.from_request(body, dict(request.query_params))
    if notification is None:
        logger.warning(f"Webhook without type or payment id: body={body!r} query={dict(request.query_params)}")
        return _acknowledge(False, error="malformed_notification")

    processor = WebhookProcessor(session_factory, provider, clock)
    result = await processor.handle_provider_notification(notification)
    logger.info(f"Webhook {notification.type} {notification.provider_payment_id}: {result.value}")
    return _acknowledge(True, result=result.value)


@payments_router.get("/history")
async def payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    payments = await BillingService(db, None, clock).payment_history(current_user.id)
    return success_response(data={"payments": payments})
