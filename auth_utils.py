"""
Authentication utilities: Password hashing and JWT token management
"""

import jwt
from datetime import timedelta
from typing import Optional

from passlib.context import CryptContext

from config import settings
from utils.clock import utc_now

# Password hashing context
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto"
)

# JWT configuration
ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """Hash a password using argon2"""
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Verify a password against its hash. Accounts without a password never match."""
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_jwt(user_id, expires_in: Optional[timedelta] = None) -> str:
    """Create a JWT token for a user"""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot create JWT token.")

    payload = {
        "sub": str(user_id),
        "exp": utc_now() + (expires_in or timedelta(days=settings.jwt_expire_days))
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=ALGORITHM)


def decode_jwt(token: str):
    """Decode a JWT token. Returns None if invalid."""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot decode JWT token.")

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def create_expired_jwt(user_id, expired_seconds_ago: int = 1) -> str:
    """
    Create an expired JWT token for testing purposes.

    Args:
        user_id: User ID to include in token
        expired_seconds_ago: How many seconds ago the token should have expired (default: 1)

    Raises:
        ValueError: If JWT_SECRET_KEY is not set
    """
    return create_jwt(user_id, expires_in=timedelta(seconds=-expired_seconds_ago))
