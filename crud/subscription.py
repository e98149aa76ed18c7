"""
SubscriptionStore: persistence for users, subscriptions and the payment ledger.

The store never opens or commits transactions itself. Callers decide the
transaction scope (request-scoped session from get_db, or an explicit
`async with session.begin()` for the webhook's activation sequence), so the
multi-row writes below are atomic with whatever else the caller does.

Status transitions use conditional UPDATEs keyed on the current status, so
concurrent writers converge instead of overwriting each other.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crud.user import UserRepository
from database_models import Payment, Subscription, User
from models.subscription import PlanType, SubscriptionRowStatus, SubscriptionStatus
from services.exceptions import NotFoundError, SubscriptionStateError
from utils.clock import as_utc, utc_now

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class SubscriptionStore:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.users.get_user_by_id(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self.users.get_user_by_email(email)

    async def upsert_user(self, email: str, profile: Optional[dict] = None,
                          now: Optional[datetime] = None) -> tuple[User, bool]:
        return await self.users.upsert_user(email, profile or {}, now=as_utc(now))

    async def _refresh_loaded(self, model, ids) -> None:
        """Bring objects already loaded in this session in line with a bulk UPDATE."""
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, model) and obj.id in ids:
                await self.db.refresh(obj)

    async def mark_expired(self, user_id: int, now: datetime, trial_days: int) -> bool:
        """
        Move one user to `expired` if their trial or paid period is over.

        Uses the same conditions as the periodic sweep, so running both at
        once is harmless. Returns True if this call changed the row.
        """
        now = as_utc(now)
        trial_cutoff = now - timedelta(days=trial_days)
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(
                    and_(
                        User.subscription_status == SubscriptionStatus.TRIAL.value,
                        User.trial_start_at <= trial_cutoff,
                    ),
                    and_(
                        User.subscription_status == SubscriptionStatus.ACTIVE.value,
                        or_(User.subscription_end_at.is_(None), User.subscription_end_at <= now),
                    ),
                ),
            )
            .values(subscription_status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        await self.expire_subscription_rows(now, user_id=user_id)
        changed = result.rowcount > 0
        if changed:
            logger.info(f"User {user_id} moved to expired")
            await self._refresh_loaded(User, {user_id})
        return changed

    async def cancel_user_subscription(self, user_id: int, now: datetime) -> bool:
        """
        User-initiated cancellation: user becomes `cancelled`, their active and
        pending subscription rows are cancelled. Returns False if already cancelled.
        """
        now = as_utc(now)
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.subscription_status != SubscriptionStatus.CANCELLED.value,
            )
            .values(subscription_status=SubscriptionStatus.CANCELLED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        await self.db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_([
                    SubscriptionRowStatus.ACTIVE.value,
                    SubscriptionRowStatus.PENDING.value,
                ]),
            )
            .values(status=SubscriptionRowStatus.CANCELLED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        changed = result.rowcount > 0
        await self._refresh_loaded(User, {user_id})
        return changed

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_subscription_by_payment_id(self, provider_payment_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.provider_payment_id == str(provider_payment_id))
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_pending_subscription(self, user_id: int,
                                          plan_type: Optional[PlanType] = None) -> Optional[Subscription]:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionRowStatus.PENDING.value,
        )
        if plan_type is not None:
            stmt = stmt.where(Subscription.plan_type == PlanType.parse(plan_type).value)
        stmt = stmt.order_by(Subscription.created_at.desc(), Subscription.id.desc()).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_pending_subscription(
        self,
        user_id: int,
        plan_type: PlanType,
        amount: float,
        provider_preference_id: Optional[str],
        currency: str = "ARS",
        checkout_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create the user's pending subscription, or return the existing one.

        A pending row for the same plan is returned unchanged. A pending row
        for another plan is cancelled first; a user has one pending row at most.
        """
        plan_type = PlanType.parse(plan_type)
        now = as_utc(now) or utc_now()

        existing = await self.latest_pending_subscription(user_id)
        if existing is not None:
            if existing.plan_type == plan_type.value:
                return existing
            logger.info(
                f"Cancelling pending {existing.plan_type} subscription {existing.id} "
                f"for user {user_id} in favour of {plan_type.value}"
            )
            existing.status = SubscriptionRowStatus.CANCELLED.value
            existing.updated_at = now
            await self.db.flush()

        subscription = Subscription(
            user_id=user_id,
            plan_type=plan_type.value,
            status=SubscriptionRowStatus.PENDING.value,
            amount=amount,
            currency=currency,
            provider_preference_id=provider_preference_id,
            checkout_url=checkout_url,
            created_at=now,
            updated_at=now,
        )
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def refresh_preference(self, subscription: Subscription, provider_preference_id: str,
                                 checkout_url: Optional[str], now: datetime) -> Subscription:
        """Point a pending subscription at a newly created checkout preference."""
        subscription.provider_preference_id = provider_preference_id
        subscription.checkout_url = checkout_url
        subscription.created_at = as_utc(now)
        subscription.updated_at = as_utc(now)
        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def cancel_pending_subscription(self, subscription_id: int,
                                          provider_payment_id: Optional[str] = None) -> bool:
        values = {
            "status": SubscriptionRowStatus.CANCELLED.value,
            "updated_at": utc_now(),
        }
        if provider_payment_id is not None:
            values["provider_payment_id"] = provider_payment_id
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionRowStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(**_NO_SYNC)
        )
        await self._refresh_loaded(Subscription, {subscription_id})
        return result.rowcount > 0

    async def activate_subscription(
        self,
        subscription_id: int,
        paid_at: datetime,
        end_at: datetime,
        provider_payment_id: str,
    ) -> Subscription:
        """
        pending -> active for one subscription, and the owning user -> active.

        Any other active subscription of the user is cancelled (superseded).
        Raises SubscriptionStateError if the row is no longer pending, which
        rolls back the caller's transaction.
        """
        paid_at = as_utc(paid_at)
        end_at = as_utc(end_at)
        now = utc_now()

        subscription = await self.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionRowStatus.PENDING.value,
            )
            .values(
                status=SubscriptionRowStatus.ACTIVE.value,
                start_at=paid_at,
                end_at=end_at,
                provider_payment_id=provider_payment_id,
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            raise SubscriptionStateError(
                f"Subscription {subscription_id} is not pending; refusing to activate"
            )

        await self.db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == subscription.user_id,
                Subscription.id != subscription_id,
                Subscription.status == SubscriptionRowStatus.ACTIVE.value,
            )
            .values(status=SubscriptionRowStatus.CANCELLED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )

        await self.db.execute(
            update(User)
            .where(User.id == subscription.user_id)
            .values(
                subscription_status=SubscriptionStatus.ACTIVE.value,
                subscription_end_at=end_at,
                last_payment_at=paid_at,
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )

        await self.db.refresh(subscription)
        await self._refresh_loaded(User, {subscription.user_id})
        logger.info(
            f"Subscription {subscription_id} ({subscription.plan_type}) active for user "
            f"{subscription.user_id} until {end_at.isoformat()}"
        )
        return subscription

    async def expire_subscription_rows(self, now: datetime, user_id: Optional[int] = None) -> int:
        stmt = update(Subscription).where(
            Subscription.status == SubscriptionRowStatus.ACTIVE.value,
            Subscription.end_at.is_not(None),
            Subscription.end_at <= as_utc(now),
        )
        if user_id is not None:
            stmt = stmt.where(Subscription.user_id == user_id)
        result = await self.db.execute(
            stmt.values(status=SubscriptionRowStatus.EXPIRED.value, updated_at=as_utc(now))
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Bulk expiry (sweeper)
    # ------------------------------------------------------------------

    async def expire_trials(self, now: datetime, trial_days: int) -> int:
        now = as_utc(now)
        result = await self.db.execute(
            update(User)
            .where(
                User.subscription_status == SubscriptionStatus.TRIAL.value,
                User.trial_start_at <= now - timedelta(days=trial_days),
            )
            .values(subscription_status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    async def expire_subscriptions(self, now: datetime) -> int:
        now = as_utc(now)
        result = await self.db.execute(
            update(User)
            .where(
                User.subscription_status == SubscriptionStatus.ACTIVE.value,
                User.subscription_end_at.is_not(None),
                User.subscription_end_at <= now,
            )
            .values(subscription_status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    async def status_counts(self) -> dict:
        result = await self.db.execute(
            select(User.subscription_status, func.count(User.id)).group_by(User.subscription_status)
        )
        return {status: count for status, count in result.all()}

    async def user_stats(self, now: datetime) -> dict:
        """Active accounts, sign-ups in the last 24 hours and accounts per subscription status."""
        now = as_utc(now)
        result = await self.db.execute(
            select(
                func.count(User.id),
                func.count(User.id).filter(User.created_at >= now - timedelta(hours=24)),
            ).where(User.is_active.is_(True))
        )
        total, new_today = result.one()
        return {
            "totalUsers": total,
            "newUsersToday": new_today,
            "byStatus": await self.status_counts(),
        }

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def get_payment_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.provider_payment_id == str(provider_payment_id))
        )
        return result.scalar_one_or_none()

    async def record_payment(
        self,
        user_id: int,
        subscription_id: Optional[int],
        provider_payment_id: str,
        amount: float,
        status: str,
        paid_at: Optional[datetime],
        currency: str = "ARS",
        payment_method: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Payment:
        """Append to the ledger. A repeated provider_payment_id violates the unique index."""
        payment = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            provider_payment_id=str(provider_payment_id),
            amount=amount,
            currency=currency,
            status=status,
            payment_method=payment_method,
            description=description,
            paid_at=as_utc(paid_at),
            created_at=utc_now(),
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def list_payments(self, user_id: int) -> list:
        """Payments of a user, newest first, each with the plan of its subscription."""
        result = await self.db.execute(
            select(Payment, Subscription.plan_type)
            .outerjoin(Subscription, Payment.subscription_id == Subscription.id)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return list(result.all())
