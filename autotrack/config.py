"""
AutoTrack settings, one class per environment.

``create_app`` picks the class named by ``APP_ENV`` (development, testing,
production) and instantiates it, so ``ProductionConfig`` can refuse to
start with missing secrets. Outside TestingConfig most settings
come from environment variables.
"""

import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Local fallback when DATABASE_URL is unset
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'autotrack_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Changes on every restart; tokens issued by a dev server do not survive it
_DEV_SECRET = secrets.token_hex(32)

# Units of base currency per one unit of the keyed currency
_DEFAULT_CURRENCY_RATES = {"USD": 83.0}

_POSTGRES_ENGINE_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,   # recycle connections every 5 min
    "pool_timeout": 20,    # wait max 20s for a connection from pool
}


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _database_url(default: str | None) -> str | None:
    # SQLAlchemy only accepts the postgresql:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


def _engine_options(url: str | None) -> dict:
    if url and url.startswith("postgresql"):
        return dict(_POSTGRES_ENGINE_OPTIONS)
    return {}


def _currency_rates() -> dict[str, float]:
    """CURRENCY_RATES env var: JSON object, e.g. '{"USD": 83, "EUR": 90}'."""
    raw = os.getenv("CURRENCY_RATES", "")
    if not raw.strip():
        return dict(_DEFAULT_CURRENCY_RATES)
    parsed = json.loads(raw)
    return {code.upper(): float(rate) for code, rate in parsed.items()}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "3600"))
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting (Flask-Limiter)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "10 per minute")

    # Currency normalisation
    BASE_CURRENCY = os.getenv("BASE_CURRENCY", "INR").upper()
    CURRENCY_RATES = _currency_rates()

    # Identity: accept X-User-Id header as the caller (dev / testing only)
    TRUST_USER_HEADER = _flag("TRUST_USER_HEADER")

    # Bulk CSV import commit batch size
    IMPORT_BATCH_SIZE = int(os.getenv("IMPORT_BATCH_SIZE", "500"))

    # Accept an "as_of" date on date-dependent endpoints (renewal alerts,
    # continuation) instead of the server clock
    ALLOW_AS_OF = _flag("ALLOW_AS_OF")

    # Federated login: OAuth client ids (ID token audience); unset disables the provider
    GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
    MICROSOFT_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
    MICROSOFT_TENANT_ID = os.getenv("MICROSOFT_TENANT_ID", "common")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)
    TRUST_USER_HEADER = _flag("TRUST_USER_HEADER", "true")
    ALLOW_AS_OF = _flag("ALLOW_AS_OF", "true")


class TestingConfig(Config):
    """In-memory SQLite, no rate limits, header identity, fixed rates."""

    TESTING = True
    SECRET_KEY = "test-secret-key-not-for-production-use"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    TRUST_USER_HEADER = True
    RATELIMIT_ENABLED = False
    BASE_CURRENCY = "INR"
    CURRENCY_RATES = dict(_DEFAULT_CURRENCY_RATES)
    IMPORT_BATCH_SIZE = 500
    ALLOW_AS_OF = True
    GOOGLE_CLIENT_ID = "autotrack-test.apps.googleusercontent.com"
    MICROSOFT_CLIENT_ID = "00000000-0000-0000-0000-0000000a070c"
    MICROSOFT_TENANT_ID = "common"


class ProductionConfig(Config):
    """Requires DATABASE_URL and SECRET_KEY."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url(None)
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POSTGRES_ENGINE_OPTIONS,
        "connect_args": {
            "options": "-c statement_timeout=30000",
        },
    }
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # no cross-origin access unless configured

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("ProductionConfig: DATABASE_URL is not set")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("ProductionConfig: SECRET_KEY is not set")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
