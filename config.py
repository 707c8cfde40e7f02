"""
Configuration for the storefront Flask app.
Production (Railway/Render): uses DATABASE_URL only; fails if missing.
Local: DATABASE_URL or DB_* fallback for backward compatibility.
"""
import os
from datetime import timedelta
from urllib.parse import quote_plus


def _is_production():
    """True when running on Railway, Render, or explicit production."""
    return (
        os.environ.get("RENDER") == "true"
        or os.environ.get("RAILWAY_ENVIRONMENT") is not None
        or os.environ.get("FLASK_ENV") == "production"
    )


def _env_flag(name, default="false"):
    return os.environ.get(name, default).lower() in ("true", "on", "1")


def _normalize_database_url(url):
    """Convert postgres:// to postgresql+psycopg2:// for SQLAlchemy/psycopg2."""
    if not url:
        return url
    url = url.strip()
    if url.startswith("postgres://"):
        return "postgresql+psycopg2://" + url[11:]
    if url.startswith("postgresql://") and "psycopg2" not in url:
        return "postgresql+psycopg2://" + url[13:]
    return url


def _get_database_uri():
    """Database URI: production = DATABASE_URL only; local = DATABASE_URL or DB_*."""
    url = os.environ.get("DATABASE_URL")
    if _is_production():
        if not url or not url.strip():
            raise RuntimeError(
                "DATABASE_URL is required in production (Railway/Render). "
                "Set it in your service environment variables."
            )
        return _normalize_database_url(url.strip())

    if url and url.strip():
        return _normalize_database_url(url.strip())

    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "storefront")
    user = os.environ.get("DB_USER", "storefront")
    password = os.environ.get("DB_PASSWORD", "")
    if password:
        password = quote_plus(password)
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get("SECRET_KEY") or "dev-secret-key-change-in-production"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = _env_flag("SESSION_COOKIE_SECURE")
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    SQLALCHEMY_DATABASE_URI = _get_database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT") or 587)
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER") or os.environ.get("MAIL_USERNAME") or "noreply@storefront.local"

    # KakaoTalk alimtalk gateway used to deliver OTP codes
    ALIMTALK_API_URL = os.environ.get("ALIMTALK_API_URL")
    ALIMTALK_API_KEY = os.environ.get("ALIMTALK_API_KEY")
    ALIMTALK_SENDER_KEY = os.environ.get("ALIMTALK_SENDER_KEY")
    ALIMTALK_TEMPLATE_CODE = os.environ.get("ALIMTALK_TEMPLATE_CODE", "OTP_VERIFY")

    # Plaintext OTPs are only ever written to the log outside production
    OTP_LOG_PLAINTEXT = not _is_production() and os.environ.get("FLASK_ENV") == "development"

    # PortOne payment provider; paid amounts are read from it, never from the client
    PORTONE_API_URL = os.environ.get("PORTONE_API_URL", "https://api.portone.io")
    PORTONE_API_SECRET = os.environ.get("PORTONE_API_SECRET")
    PORTONE_WEBHOOK_SECRET = os.environ.get("PORTONE_WEBHOOK_SECRET")
    CRON_SECRET = os.environ.get("CRON_SECRET")

    RATELIMIT_ENABLED = _env_flag("RATELIMIT_ENABLED", "true")

    # Uniform responses for account lookups so callers cannot enumerate users
    CONCEAL_ACCOUNT_EXISTENCE = _env_flag("CONCEAL_ACCOUNT_EXISTENCE", "true")

    # False: Jeju/mountain surcharge is still charged above the free-shipping threshold
    SHIPPING_WAIVE_SURCHARGE_ON_FREE = _env_flag("SHIPPING_WAIVE_SURCHARGE_ON_FREE")


class TestingConfig(Config):
    """Configuration used by the test suite."""
    TESTING = True
    SECRET_KEY = "testing-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    MAIL_SUPPRESS_SEND = True
    MAIL_SERVER = "localhost"
    MAIL_USERNAME = "tests@storefront.local"
    MAIL_DEFAULT_SENDER = "tests@storefront.local"
    ALIMTALK_API_URL = None
    OTP_LOG_PLAINTEXT = False
    PORTONE_API_URL = "https://portone.test"
    PORTONE_API_SECRET = "test-portone-secret"
    PORTONE_WEBHOOK_SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldA=="
    CRON_SECRET = "test-cron-secret"
    RATELIMIT_ENABLED = True
    CONCEAL_ACCOUNT_EXISTENCE = True
    SHIPPING_WAIVE_SURCHARGE_ON_FREE = False
