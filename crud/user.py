"""
UserRepository for database operations on User model
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import User
from models.subscription import AuthProvider, SubscriptionStatus
from utils.clock import utc_now

# Columns that are fixed once the account exists
IMMUTABLE_FIELDS = {"id", "created_at", "trial_start_at"}


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address (case-insensitive).
        """
        result = await self.db.execute(
            select(User).where(User.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def create_user(self, user_data: dict, now: Optional[datetime] = None) -> User:
        """
        Create a new user in the database. New users always start a trial.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                Optional:
                - hashed_password: str (None for Google accounts)
                - full_name, phone: str
                - auth_provider: str (defaults to "password")
                - is_active: bool (defaults to True)
            now: creation instant; also the start of the trial window

        Returns:
            Created User object
        """
        now = now or utc_now()
        user = User(
            email=user_data["email"].strip().lower(),
            hashed_password=user_data.get("hashed_password"),
            full_name=user_data.get("full_name"),
            phone=user_data.get("phone"),
            auth_provider=user_data.get("auth_provider", AuthProvider.PASSWORD.value),
            is_active=user_data.get("is_active", True),
            created_at=now,
            trial_start_at=now,
            subscription_status=SubscriptionStatus.TRIAL.value,
            subscription_end_at=None,
            updated_at=now,
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update mutable profile fields. Identity and trial start are never rewritten.
        """
        for key, value in updates.items():
            if key in IMMUTABLE_FIELDS:
                continue
            if hasattr(user, key):
                setattr(user, key, value)

        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def upsert_user(self, email: str, profile: dict, now: Optional[datetime] = None) -> tuple[User, bool]:
        """
        Return the user with this email, creating it when missing.
        Existing users only get empty profile fields filled in.

        Returns:
            (user, created)
        """
        user = await self.get_user_by_email(email)
        if user is None:
            return await self.create_user({"email": email, **profile}, now=now), True

        updates = {
            key: value
            for key, value in profile.items()
            if value is not None and getattr(user, key, None) in (None, "")
        }
        if updates:
            user = await self.update_user(user, updates)
        return user, False
