from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UserProfile(BaseModel):
    """Public view of a user (never includes the password hash)."""
    user_id: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    auth_provider: str = "password"
    subscription_status: str
    trial_start_at: Optional[datetime] = None
    subscription_end_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user) -> "UserProfile":
        return cls(
            user_id=str(user.id),
            email=user.email,
            full_name=user.full_name,
            phone=user.phone,
            auth_provider=user.auth_provider,
            subscription_status=user.subscription_status,
            trial_start_at=user.trial_start_at,
            subscription_end_at=user.subscription_end_at,
            last_payment_at=user.last_payment_at,
            created_at=user.created_at,
        )
