"""
Authentication routes and dependencies
"""

import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import create_jwt, decode_jwt, hash_password, verify_password
from config import IS_PRODUCTION, settings
from crud.subscription import SubscriptionStore
from database import get_db
from database_models import User
from models.subscription import AuthProvider
from models.user import UserProfile
from services.access_policy import AccessDecision, AccessPolicy, get_access_policy, resolve_access
from services.exceptions import AccessDeniedError
from utils.clock import Clock, get_clock
from utils.security_utils import validate_email, validate_password_strength

logger = logging.getLogger(__name__)

AUTH_COOKIE = "auth_token"

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


# Request models
class SignupRequest(BaseModel):
    email: str
    password: str
    fullName: str
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


def set_auth_cookie(response, token: str, samesite: str = "Lax"):
    response.set_cookie(
        key=AUTH_COOKIE,
        value=token,
        httponly=True,
        secure=IS_PRODUCTION,
        samesite=samesite,
        path="/",
        max_age=settings.jwt_expire_days * 86400,
    )
    return response


def _auth_response(user: User, status_code: int = 200) -> JSONResponse:
    token = create_jwt(user.id)
    response = JSONResponse(
        status_code=status_code,
        content={
            "ok": True,
            "user_id": str(user.id),
            "token": token,
            "user": UserProfile.from_user(user).model_dump(mode="json"),
        }
    )
    return set_auth_cookie(response, token)


@auth_router.post("/signup")
async def signup(
    request: SignupRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Create a new user account. Every new account starts its free trial now."""
    try:
        email = validate_email(request.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Validate password strength
    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    full_name = (request.fullName or "").strip()
    if not full_name:
        raise HTTPException(status_code=400, detail="Full name is required")

    store = SubscriptionStore(db)

    # Check if email already exists
    if await store.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user_data = {
        "email": email,
        "hashed_password": hash_password(request.password),
        "full_name": full_name,
        "phone": (request.phone or "").strip() or None,
        "auth_provider": AuthProvider.PASSWORD.value,
        "is_active": True,
    }
    try:
        user = await store.users.create_user(user_data, now=clock.now())
    except IntegrityError:
        # Concurrent signup with the same email won the unique index
        await db.rollback()
        raise HTTPException(status_code=400, detail="Email already registered")

    logger.info(f"User {user.id} registered; trial started at {user.trial_start_at}")
    return _auth_response(user, status_code=201)


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user = await SubscriptionStore(db).get_user_by_email(request.email or "")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    # Google-only accounts have no password hash and never match
    if not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    # Check if user is active
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    logger.info(f"User {user.id} logged in")
    return _auth_response(user)


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Priority 1: httpOnly cookie (browser clients)
    if auth_token:
        return auth_token
    # Priority 2: Authorization header (API consumers)
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Check auth_token cookie first (httpOnly cookie set by login/signup)
    2. Fallback to Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is found
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    payload = decode_jwt(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    # Convert user_id to integer (JWT stores it as string)
    try:
        user_id = int(user_id_str)
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid user ID in token")

    user = await SubscriptionStore(db).get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return user


async def require_access(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: AccessPolicy = Depends(get_access_policy),
) -> AccessDecision:
    """
    Dependency guarding premium routes.

    Returns the access decision for users in their trial or paid period and
    raises AccessDeniedError (answered with 402) for everyone else. A lazy
    move to `expired` is committed before raising so the denial sticks.
    """
    decision = await resolve_access(SubscriptionStore(db), policy, user, clock.now())
    if not decision.has_access:
        await db.commit()
        logger.info(f"User {user.id} denied premium access ({decision.mode.value})")
        raise AccessDeniedError(decision)
    return decision


@auth_router.get("/me")
async def get_current_user_info(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: AccessPolicy = Depends(get_access_policy),
):
    """Current user plus their access decision right now"""
    decision = await resolve_access(SubscriptionStore(db), policy, user, clock.now())
    return {
        "ok": True,
        "user": UserProfile.from_user(user).model_dump(mode="json"),
        "subscription": decision.to_dict(),
    }


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    response.set_cookie(
        key=AUTH_COOKIE,
        value="",
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="Lax",
        path="/",
        max_age=0
    )
    return response
