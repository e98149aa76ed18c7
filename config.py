"""
Centralized configuration using Pydantic BaseSettings.
Credentials are optional so the application can start without them; features
that need them log a warning and fail at call time instead.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Allow both field name and alias
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")
    jwt_expire_days: int = Field(default=30, alias="JWT_EXPIRE_DAYS")
    session_secret_key: Optional[str] = Field(default=None, alias="SESSION_SECRET_KEY")

    # Google OAuth
    google_client_id: Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_SECRET")
    google_redirect_uri: Optional[str] = Field(default=None, alias="GOOGLE_REDIRECT_URI")

    # MercadoPago billing configuration
    mp_access_token: Optional[str] = Field(default=None, alias="MP_ACCESS_TOKEN")
    mp_webhook_secret: Optional[str] = Field(default=None, alias="MP_WEBHOOK_SECRET")
    mp_api_base_url: str = Field(default="https://api.mercadopago.com", alias="MP_API_BASE_URL")
    mp_timeout_seconds: float = Field(default=30.0, alias="MP_TIMEOUT_SECONDS")

    # Trial and pricing configuration
    trial_days: int = Field(default=15, alias="TRIAL_DAYS")
    monthly_price: float = Field(default=2999.0, alias="MONTHLY_PRICE")
    annual_price: float = Field(default=29999.0, alias="ANNUAL_PRICE")
    currency: str = Field(default="ARS", alias="CURRENCY")
    preference_ttl_hours: int = Field(default=24, alias="PREFERENCE_TTL_HOURS")

    # Expiry sweeper
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")
    sweep_interval_seconds: int = Field(default=3600, alias="SWEEP_INTERVAL_SECONDS")

    # Infrastructure configuration
    database_url: Optional[str] = Field(
        default="sqlite+aiosqlite:///./drivemetrics.db", alias="DATABASE_URL"
    )

    # Frontend / public URLs
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")
    backend_url: Optional[str] = Field(default="http://localhost:8000", alias="BACKEND_URL")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.env and settings.env.lower() == "production")
