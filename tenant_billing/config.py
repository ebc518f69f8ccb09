"""Application configuration module.

Provides environment-specific settings with sane, secure defaults.
"""
import os
from pathlib import Path
from datetime import timedelta

from .utils import env_bool, env_int


BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent
INSTANCE_DIR = PROJECT_ROOT / "instance"
DEFAULT_DB_PATH = INSTANCE_DIR / "billing.sqlite"


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    APP_NAME = "Tenant Billing"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = timedelta(minutes=45)
    PREFERRED_URL_SCHEME = os.environ.get("PREFERRED_URL_SCHEME", "https")

    # Webhook transport
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    WEBHOOK_DEADLINE_SECONDS = env_int("WEBHOOK_DEADLINE_SECONDS", 10)

    # Entitlement governance
    MANUAL_PAYMENT_PERIOD_DAYS = env_int("MANUAL_PAYMENT_PERIOD_DAYS", 30)
    FREE_AI_DAILY_LIMIT = env_int("FREE_AI_DAILY_LIMIT", 50)
    FREE_AI_MONTHLY_LIMIT = env_int("FREE_AI_MONTHLY_LIMIT", 1000)

    # Operator identity (reviews manual payments)
    SUPERADMIN_EMAIL = os.environ.get("SUPERADMIN_EMAIL", "")
    SUPERADMIN_NAME = os.environ.get("SUPERADMIN_NAME", "Platform Owner")

    # Notifications
    PAYMENT_EMAILS_ENABLED = env_bool("PAYMENT_EMAILS_ENABLED", False)
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "billing@tenant-billing.app")
    MAIL_DEFAULT_NAME = os.environ.get("MAIL_DEFAULT_NAME", "Tenant Billing")
    SMTP_HOST = os.environ.get("SMTP_HOST", "")
    SMTP_PORT = env_int("SMTP_PORT", 587)
    SMTP_TIMEOUT_SECONDS = env_int("SMTP_TIMEOUT_SECONDS", 10)
    SMTP_USERNAME = os.environ.get("SMTP_USERNAME")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")
    SMTP_USE_TLS = env_bool("SMTP_USE_TLS", True)
    SMTP_USE_SSL = env_bool("SMTP_USE_SSL", False)


class DevelopmentConfig(Config):
    DEBUG = True
    ENV = "development"


class ProductionConfig(Config):
    DEBUG = False
    ENV = "production"
    SESSION_COOKIE_SECURE = True


class TestingConfig(Config):
    TESTING = True
    ENV = "testing"
    SECRET_KEY = "testing-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    STRIPE_WEBHOOK_SECRET = "whsec_testing"
    SUPERADMIN_EMAIL = "owner@tenant-billing.app"
    PAYMENT_EMAILS_ENABLED = False
    SMTP_HOST = ""
