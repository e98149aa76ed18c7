"""
MercadoPago REST client.

Only the two calls the subscription flow needs: creating a checkout
preference (one-off payment via PIX/card/ticket) and fetching a payment by id
when a webhook arrives.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import httpx

from config import settings
from models.subscription import PlanType
from services.exceptions import PaymentProviderError
from utils.clock import as_utc

logger = logging.getLogger(__name__)

# user_{userId}_{planType}_{epochMillis}
_EXTERNAL_REFERENCE_RE = re.compile(r"^user_(\d+)_([a-z]+)_(\d+)$")


def build_external_reference(user_id: int, plan_type: PlanType, now: datetime) -> str:
    """Opaque reference round-tripped through the provider to find the user and plan again."""
    millis = int(as_utc(now).timestamp() * 1000)
    return f"user_{int(user_id)}_{PlanType.parse(plan_type).value}_{millis}"


def parse_external_reference(reference) -> Optional[tuple[int, PlanType]]:
    """Return (user_id, plan_type), or None if the reference is malformed."""
    match = _EXTERNAL_REFERENCE_RE.match(str(reference or "").strip())
    if not match:
        return None
    try:
        return int(match.group(1)), PlanType.parse(match.group(2))
    except ValueError:
        return None


def _parse_datetime(value) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Unparseable provider timestamp: {raw!r}")
        return None


@dataclass
class ProviderPayment:
    """Authoritative payment detail as reported by the provider."""
    id: str
    status: str
    amount: float
    currency: str
    external_reference: Optional[str] = None
    approved_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict) -> "ProviderPayment":
        return cls(
            id=str(data.get("id")),
            status=str(data.get("status") or "").lower(),
            amount=float(data.get("transaction_amount") or 0),
            currency=data.get("currency_id") or settings.currency,
            external_reference=data.get("external_reference"),
            approved_at=_parse_datetime(data.get("date_approved")),
            payment_method=data.get("payment_type_id") or data.get("payment_method_id"),
            raw=data,
        )


@dataclass
class PaymentPreference:
    id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None

    @property
    def checkout_url(self) -> Optional[str]:
        return self.init_point or self.sandbox_init_point


class PaymentProvider(Protocol):
    async def create_preference(
        self,
        title: str,
        description: str,
        price: float,
        currency: str,
        payer_email: Optional[str],
        external_reference: str,
        expires_from: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> PaymentPreference: ...

    async def get_payment(self, payment_id: str) -> ProviderPayment: ...


class MercadoPagoClient:
    """Async MercadoPago client using the REST API directly."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token if access_token is not None else settings.mp_access_token
        self.base_url = (base_url or settings.mp_api_base_url).rstrip("/")
        self.timeout = timeout or settings.mp_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        if not self.access_token:
            raise PaymentProviderError("MP_ACCESS_TOKEN is not set. Cannot call MercadoPago.")
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, json=json)
        except httpx.RequestError as e:
            logger.error(f"MercadoPago request failed: {method} {url}: {e}")
            raise PaymentProviderError(f"MercadoPago unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"MercadoPago {method} {url} returned {response.status_code}: {response.text}")
            raise PaymentProviderError(
                f"MercadoPago error {response.status_code}", status_code=response.status_code
            )
        return response.json()

    async def create_preference(
        self,
        title: str,
        description: str,
        price: float,
        currency: str,
        payer_email: Optional[str],
        external_reference: str,
        expires_from: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> PaymentPreference:
        """
        Create a checkout preference (single payment).
        When expires_at is given the preference only accepts payments
        between expires_from and expires_at.
        """
        frontend_url = (settings.frontend_url or "").rstrip("/")
        backend_url = (settings.backend_url or "").rstrip("/")
        payload = {
            "items": [
                {
                    "title": title,
                    "description": description,
                    "quantity": 1,
                    "currency_id": currency,
                    "unit_price": round(float(price), 2),
                }
            ],
            "external_reference": external_reference,
            "back_urls": {
                "success": f"{frontend_url}/payment/success",
                "failure": f"{frontend_url}/payment/failure",
                "pending": f"{frontend_url}/payment/pending",
            },
            "auto_return": "approved",
            "notification_url": f"{backend_url}/api/payments/webhook",
        }
        if payer_email:
            payload["payer"] = {"email": payer_email}
        if expires_at is not None:
            payload["expires"] = True
            if expires_from is not None:
                payload["expiration_date_from"] = as_utc(expires_from).isoformat()
            payload["expiration_date_to"] = as_utc(expires_at).isoformat()

        logger.info(f"Creating MercadoPago preference for {external_reference}")
        data = await self._request("POST", "/checkout/preferences", json=payload)
        return PaymentPreference(
            id=str(data.get("id")),
            init_point=data.get("init_point"),
            sandbox_init_point=data.get("sandbox_init_point"),
        )

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """Fetch a payment (used by the webhook when type=payment)."""
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return ProviderPayment.from_api(data)


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency returning the configured payment provider."""
    if not settings.mp_access_token:
        logger.warning("MP_ACCESS_TOKEN is not set. MercadoPago functionality will be unavailable.")
    return MercadoPagoClient()
