"""
API tests for the subscription and payment routes
"""
from datetime import timedelta

from sqlalchemy import func, select

from config import settings
from crud.subscription import SubscriptionStore
from database_models import Payment
from models.subscription import PlanType
from services.mercadopago_client import build_external_reference

from conftest import T0, TRIAL_DAYS


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.headers["X-Content-Type-Options"] == "nosniff"


async def test_plans_catalog(client):
    response = await client.get("/api/subscription/plans")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["trialDays"] == settings.trial_days
    plans = {plan["planType"]: plan for plan in data["plans"]}
    assert plans["monthly"]["price"] == 2999.0
    assert plans["annual"]["price"] == 29999.0
    assert plans["annual"]["months"] == 12
    assert plans["monthly"]["currency"] == "ARS"


async def test_status_during_trial(client, make_user, auth_headers, clock):
    user = await make_user()
    clock.advance(timedelta(days=14, hours=12))

    response = await client.get("/api/subscription/status", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "trial"
    assert data["mode"] == "trial"
    assert data["access"] == "full"
    assert data["daysLeft"] == 1
    assert data["hoursLeft"] == 12
    assert data["trialEndsAt"] == (T0 + timedelta(days=TRIAL_DAYS)).isoformat()
    assert data["subscriptionEndAt"] is None
    assert data["lastPaymentAt"] is None


async def test_status_expires_trial_lazily(client, make_user, auth_headers, clock, session_factory):
    user = await make_user()
    clock.advance(timedelta(days=TRIAL_DAYS))

    response = await client.get(f"/api/subscription/status?userId={user.id}", headers=auth_headers(user))

    data = response.json()["data"]
    assert data["access"] == "denied"
    assert data["mode"] == "expired-trial"
    assert data["status"] == "expired"
    assert data["daysLeft"] == 0
    async with session_factory() as session:
        assert (await SubscriptionStore(session).get_user(user.id)).subscription_status == "expired"


async def test_status_of_other_user_is_forbidden(client, make_user, auth_headers):
    user = await make_user()
    other = await make_user()

    response = await client.get(f"/api/subscription/status?userId={other.id}", headers=auth_headers(user))

    assert response.status_code == 403
    assert response.json()["ok"] is False


async def test_status_requires_authentication(client):
    response = await client.get("/api/subscription/status")
    assert response.status_code == 401


async def test_access_gate(client, make_user, auth_headers, clock, session_factory):
    user = await make_user()

    response = await client.get("/api/subscription/access", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["data"]["subscription"]["mode"] == "trial"

    clock.advance(timedelta(days=TRIAL_DAYS, seconds=1))
    response = await client.get("/api/subscription/access", headers=auth_headers(user))

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "subscription_required"
    assert body["data"]["subscription"]["mode"] == "expired-trial"
    assert len(body["data"]["pricing"]["plans"]) == 2
    # The lazy expiry is persisted even though access was denied
    async with session_factory() as session:
        assert (await SubscriptionStore(session).get_user(user.id)).subscription_status == "expired"


async def test_payment_preference(client, make_user, auth_headers, provider, clock):
    user = await make_user()

    response = await client.post(
        "/api/subscription/payment-preference",
        json={"planType": "monthly", "userId": user.id},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["preferenceId"] == "pref-1"
    assert data["checkoutUrl"] == "https://mp.test/checkout/pref-1"
    assert data["plan"]["planType"] == "monthly"
    assert data["subscriptionId"]

    sent = provider.preferences[0]
    assert sent["price"] == 2999.0
    assert sent["currency"] == "ARS"
    assert sent["payer_email"] == user.email
    assert sent["external_reference"] == build_external_reference(user.id, PlanType.MONTHLY, clock.now())
    assert sent["expires_at"] - sent["expires_from"] == timedelta(hours=24)


async def test_payment_preference_is_reused_while_fresh(client, make_user, auth_headers, provider, clock):
    user = await make_user()
    url = "/api/subscription/payment-preference"

    first = (await client.post(url, json={"planType": "annual"}, headers=auth_headers(user))).json()["data"]
    clock.advance(timedelta(hours=2))
    second = (await client.post(url, json={"planType": "annual"}, headers=auth_headers(user))).json()["data"]

    assert second["preferenceId"] == first["preferenceId"]
    assert second["subscriptionId"] == first["subscriptionId"]
    assert len(provider.preferences) == 1

    clock.advance(timedelta(hours=23))
    third = (await client.post(url, json={"planType": "annual"}, headers=auth_headers(user))).json()["data"]

    assert third["preferenceId"] == "pref-2"
    assert third["subscriptionId"] == first["subscriptionId"]


async def test_switching_plan_replaces_pending(client, make_user, auth_headers, session_factory):
    user = await make_user()
    url = "/api/subscription/payment-preference"

    monthly = (await client.post(url, json={"planType": "monthly"}, headers=auth_headers(user))).json()["data"]
    annual = (await client.post(url, json={"planType": "annual"}, headers=auth_headers(user))).json()["data"]

    assert annual["subscriptionId"] != monthly["subscriptionId"]
    async with session_factory() as session:
        store = SubscriptionStore(session)
        assert (await store.get_subscription(monthly["subscriptionId"])).status == "cancelled"
        assert (await store.latest_pending_subscription(user.id)).plan_type == "annual"


async def test_payment_preference_errors(client, make_user, auth_headers, provider):
    user = await make_user()
    other = await make_user()
    url = "/api/subscription/payment-preference"

    response = await client.post(url, json={"planType": "weekly"}, headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_plan"

    response = await client.post(url, json={"planType": "monthly", "userId": other.id}, headers=auth_headers(user))
    assert response.status_code == 403

    provider.fail = True
    response = await client.post(url, json={"planType": "monthly"}, headers=auth_headers(user))
    assert response.status_code == 502
    assert response.json()["error"] == "payment_provider_error"


async def test_checkout_to_paid_access_flow(client, make_user, auth_headers, provider, clock, session_factory):
    user = await make_user()
    clock.advance(timedelta(days=5))

    await client.post(
        "/api/subscription/payment-preference",
        json={"planType": "monthly"},
        headers=auth_headers(user),
    )
    reference = provider.preferences[0]["external_reference"]
    provider.add_payment("5001", "approved", reference, date_approved=clock.now())

    webhook = {"type": "payment", "data": {"id": "5001"}}
    first = await client.post("/api/payments/webhook", json=webhook)
    second = await client.post("/api/payments/webhook", json=webhook)

    assert first.status_code == 200
    assert first.json()["result"] == "activated"
    assert second.status_code == 200
    assert second.json()["result"] == "duplicate"
    async with session_factory() as session:
        assert (await session.execute(select(func.count(Payment.id)))).scalar_one() == 1

    status = (await client.get("/api/subscription/status", headers=auth_headers(user))).json()["data"]
    assert status["status"] == "active"
    assert status["mode"] == "paid"
    assert status["subscriptionEndAt"] == (T0 + timedelta(days=5 + 31)).isoformat()
    assert status["lastPaymentAt"] == (T0 + timedelta(days=5)).isoformat()

    history = (await client.get("/api/payments/history", headers=auth_headers(user))).json()["data"]["payments"]
    assert len(history) == 1
    assert history[0]["providerPaymentId"] == "5001"
    assert history[0]["planType"] == "monthly"
    assert history[0]["amount"] == 2999.0


async def test_webhook_always_answers_200(client, provider):
    provider.fail = True

    response = await client.post("/api/payments/webhook", json={"type": "payment", "data": {"id": "1"}})
    assert response.status_code == 200
    assert response.json()["result"] == "failed"

    response = await client.post("/api/payments/webhook", content=b"not json")
    assert response.status_code == 200
    assert response.json()["error"] == "malformed_notification"

    response = await client.post("/api/payments/webhook", json={"type": "merchant_order", "data": {"id": "9"}})
    assert response.status_code == 200
    assert response.json()["result"] == "ignored"


async def test_webhook_query_string_notification(client, make_user, provider, clock):
    user = await make_user()
    provider.add_payment("6001", "approved", build_external_reference(user.id, "annual", clock.now()),
                         amount=29999.0, date_approved=clock.now())

    response = await client.post("/api/payments/webhook?topic=payment&id=6001")

    assert response.status_code == 200
    assert response.json()["result"] == "activated"


async def test_webhook_secret(client, provider, monkeypatch):
    monkeypatch.setattr(settings, "mp_webhook_secret", "s3cret")

    response = await client.post("/api/payments/webhook?secret=wrong", json={"type": "payment", "data": {"id": "1"}})
    assert response.status_code == 200
    assert response.json()["error"] == "invalid_secret"
    assert provider.get_payment_calls == 0

    response = await client.post("/api/payments/webhook?secret=s3cret", json={"type": "payment", "data": {"id": "1"}})
    assert response.status_code == 200
    assert provider.get_payment_calls == 1


async def test_cancel_subscription(client, make_user, auth_headers):
    user = await make_user()

    response = await client.post("/api/subscription/cancel", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "cancelled", "changed": True}

    response = await client.get("/api/subscription/access", headers=auth_headers(user))
    assert response.status_code == 402
    assert response.json()["data"]["subscription"]["mode"] == "cancelled"


async def test_payment_history_empty(client, make_user, auth_headers):
    user = await make_user()
    response = await client.get("/api/payments/history", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["data"]["payments"] == []


async def test_premium_metrics_during_trial(client, make_user, auth_headers):
    user = await make_user()

    response = await client.get("/api/premium/metrics", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()["data"]
    assert set(data["platforms"]) == {"uber", "didi", "pedidosya", "rappi"}
    assert data["recommendations"][0]["platform"] == "pedidosya"
    assert data["subscription"]["mode"] == "trial"


async def test_premium_metrics_denied_after_trial(client, make_user, auth_headers, clock, session_factory):
    user = await make_user()
    clock.advance(timedelta(days=TRIAL_DAYS))

    response = await client.get("/api/premium/metrics", headers=auth_headers(user))

    assert response.status_code == 402
    body = response.json()
    assert body["ok"] is False
    assert body["error"] == "subscription_required"
    assert body["data"]["subscription"]["mode"] == "expired-trial"
    assert body["data"]["pricing"]["trialDays"] == settings.trial_days
    async with session_factory() as session:
        assert (await SubscriptionStore(session).get_user(user.id)).subscription_status == "expired"


async def test_premium_metrics_for_paid_user(client, make_user, auth_headers, clock):
    user = await make_user(
        trial_start_at=T0 - timedelta(days=60),
        subscription_status="active",
        subscription_end_at=T0 + timedelta(days=10),
    )

    response = await client.get("/api/premium/metrics", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["data"]["subscription"]["mode"] == "paid"


async def test_premium_metrics_requires_authentication(client):
    response = await client.get("/api/premium/metrics")
    assert response.status_code == 401


async def test_stats(client, make_user, auth_headers, clock):
    user = await make_user()
    await make_user(subscription_status="expired")
    await make_user(is_active=False)
    clock.advance(timedelta(hours=30))
    await make_user()

    response = await client.get("/api/stats", headers=auth_headers(user))

    assert response.status_code == 200
    stats = response.json()["data"]["stats"]
    assert stats["totalUsers"] == 3
    assert stats["newUsersToday"] == 1
    assert stats["byStatus"] == {"trial": 3, "expired": 1}


async def test_stats_requires_authentication(client):
    response = await client.get("/api/stats")
    assert response.status_code == 401
