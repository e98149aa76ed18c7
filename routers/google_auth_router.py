"""
Google Single Sign-On (SSO) Router
Handles Google OAuth authentication flow
"""

import logging

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import set_auth_cookie
from auth_utils import create_jwt
from config import IS_PRODUCTION, settings
from crud.subscription import SubscriptionStore
from database import get_db
from models.subscription import AuthProvider
from utils.clock import Clock, get_clock
from utils.security_utils import normalize_email

logger = logging.getLogger(__name__)

# Initialize OAuth
oauth = OAuth()

# Configure Google OAuth provider
if settings.google_client_id and settings.google_client_secret and settings.google_redirect_uri:
    oauth.register(
        name="google",
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={
            "scope": "openid email profile"
        }
    )
else:
    logger.warning("Google OAuth credentials not configured. Google SSO will be unavailable.")

# Create Google auth router
google_auth_router = APIRouter(prefix="/api/auth/google", tags=["google-auth"])


def _google_configured() -> bool:
    return bool(settings.google_client_id and settings.google_client_secret and settings.google_redirect_uri)


@google_auth_router.get("/login")
async def google_login(request: Request):
    """
    Initiate Google OAuth login flow.
    Redirects user to Google consent screen; authlib keeps the state in request.session.
    """
    if not _google_configured():
        raise HTTPException(status_code=503, detail="Google OAuth not configured")

    try:
        return await oauth.google.authorize_redirect(request, settings.google_redirect_uri)
    except Exception as e:
        logger.error(f"Google login initiation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to initiate Google login")


@google_auth_router.get("/auth")
async def google_auth_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Handle Google OAuth callback.
    Fetches the user profile, creates the account on first login (starting
    its trial), and redirects to the frontend with the auth cookie set.
    """
    if not _google_configured():
        raise HTTPException(status_code=503, detail="Google OAuth not configured")

    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        # Usually a state mismatch: the session cookie did not survive the redirect
        logger.warning(f"Google OAuth callback rejected: {e.error} {e.description}")
        raise HTTPException(status_code=400, detail="Google authentication failed")

    user_info = token.get("userinfo")
    if not user_info:
        user_info = await oauth.google.userinfo(token=token)

    email = normalize_email(user_info.get("email"))
    if not email:
        raise HTTPException(status_code=400, detail="Email not provided by Google")

    store = SubscriptionStore(db)
    user, created = await store.upsert_user(
        email,
        {
            "full_name": user_info.get("name"),
            "auth_provider": AuthProvider.GOOGLE.value,
            "is_active": True,
        },
        now=clock.now(),
    )
    if created:
        logger.info(f"User {user.id} registered via Google; trial started")
    else:
        logger.info(f"User {user.id} logged in via Google")

    response = RedirectResponse(url=settings.frontend_url or "http://localhost:3000")
    return set_auth_cookie(response, create_jwt(user.id), samesite="None" if IS_PRODUCTION else "Lax")
