"""
CrowdBeat Session Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'crowdbeat_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (health check, rate-limit storage, session event fan-out)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    EVENTS_REDIS_URL = os.getenv("EVENTS_REDIS_URL", "")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting (Flask-Limiter string notation)
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "true").lower() == "true"
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    VOTE_RATE_LIMIT = os.getenv("VOTE_RATE_LIMIT", "5/second")
    FEEDBACK_RATE_LIMIT = os.getenv("FEEDBACK_RATE_LIMIT", "20 per 10 seconds")
    WRITE_RATE_LIMIT = os.getenv("WRITE_RATE_LIMIT", "60/minute")
    READ_RATE_LIMIT = os.getenv("READ_RATE_LIMIT", "200/minute")

    # External identity / reputation service (optional; unset means prizes are only logged)
    IDENTITY_SERVICE_URL = os.getenv("IDENTITY_SERVICE_URL", "")
    IDENTITY_SERVICE_TOKEN = os.getenv("IDENTITY_SERVICE_TOKEN", "")
    IDENTITY_SERVICE_TIMEOUT = int(os.getenv("IDENTITY_SERVICE_TIMEOUT", "10"))

    # Session / competition defaults
    DEFAULT_MAX_PARTICIPANTS = int(os.getenv("DEFAULT_MAX_PARTICIPANTS", "100"))
    DEFAULT_COMPETITION_VOTING_HOURS = int(os.getenv("DEFAULT_COMPETITION_VOTING_HOURS", "48"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool, which rejects pool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = ""
    EVENTS_REDIS_URL = ""
    IDENTITY_SERVICE_URL = ""


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", os.getenv("REDIS_URL", "memory://"))
    EVENTS_REDIS_URL = os.getenv("EVENTS_REDIS_URL", os.getenv("REDIS_URL", ""))

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
