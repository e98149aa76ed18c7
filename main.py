"""
DriveMetrics Backend
Trial / subscription access control for drivers, with MercadoPago checkout
"""

from contextlib import asynccontextmanager
from pathlib import Path
import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse

# Import routers
from auth import auth_router
from routers.google_auth_router import google_auth_router
from routers.payments_router import payments_router
from routers.premium_router import premium_router
from routers.stats_router import stats_router
from routers.subscription_router import subscription_router
from database import init_db
from jobs.expiry_job import shutdown_expiry_scheduler, start_expiry_scheduler
from config import settings, IS_PRODUCTION
from services.exceptions import AccessDeniedError
from services.plans import pricing
from utils.responses import error_response, success_response

# ============================================================================
# LOGGING
# ============================================================================

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, check configuration and run the expiry sweeper while the app is up."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    missing = [
        name for name, value in {
            "JWT_SECRET_KEY": settings.jwt_secret_key,
            "MP_ACCESS_TOKEN": settings.mp_access_token,
            "SESSION_SECRET_KEY": settings.session_secret_key,
        }.items()
        if not value
    ]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")

    if settings.sweeper_enabled:
        start_expiry_scheduler()
    try:
        yield
    finally:
        shutdown_expiry_scheduler()


# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="DriveMetrics API", lifespan=lifespan)


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request, exc: AccessDeniedError):
    return error_response(
        "subscription_required",
        status=402,
        message="Your trial or subscription has ended",
        data={"subscription": exc.decision.to_dict(), "pricing": pricing()},
    )


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "data": {}, "error": "internal_error", "message": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # API only: nothing here should ever be rendered or framed
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Strict-Transport-Security only where HTTPS is guaranteed
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# authlib keeps the OAuth state in the Starlette session
if not settings.session_secret_key:
    logger.warning("SESSION_SECRET_KEY is not set. Using the JWT secret for OAuth sessions.")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret_key or settings.jwt_secret_key or "drivemetrics-dev-session",
    same_site="lax",
    https_only=IS_PRODUCTION,
)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(auth_router)
app.include_router(google_auth_router)
app.include_router(subscription_router)
app.include_router(payments_router)
app.include_router(premium_router)
app.include_router(stats_router)


@app.get("/health")
async def health():
    return success_response(data={"status": "ok"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
