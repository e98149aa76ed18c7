from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)

from database import Base
from models.subscription import AuthProvider, SubscriptionRowStatus, SubscriptionStatus
from utils.clock import utc_now


class User(Base):
    """
    Registered driver account.
    subscription_status is one of SubscriptionStatus; subscription_end_at is only
    set once the user has paid.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=True)  # None for Google-only accounts
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    auth_provider = Column(String, nullable=False, default=AuthProvider.PASSWORD.value)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    trial_start_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    subscription_status = Column(
        String, nullable=False, default=SubscriptionStatus.TRIAL.value, index=True
    )
    subscription_end_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SubscriptionRowStatus.PENDING.value)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    currency = Column(String, nullable=False, default="ARS")
    provider_preference_id = Column(String, nullable=True)
    provider_payment_id = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        # One pending subscription per user
        Index(
            "uq_subscriptions_user_pending",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )


class Payment(Base):
    """Append-only payment ledger. provider_payment_id is the idempotency key."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    provider_payment_id = Column(String, nullable=False, unique=True)
    amount = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    currency = Column(String, nullable=False, default="ARS")
    status = Column(String, nullable=False)
    payment_method = Column(String, nullable=True)
    description = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
