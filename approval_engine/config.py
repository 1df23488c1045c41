"""
Approval Workflow Engine
Configuration classes for the Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Engine settings (all optional, env-driven):
    APPROVAL_FINANCE_OFFICER_KEY           identity key of the finance officer
    APPROVAL_BUSINESS_HEAD_KEY             identity key of the head of business
    APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY  identity key of the supply chain coordinator
    APPROVAL_GRADING_FALLBACK_KEY          last-resort substitute for graded levels
    APPROVAL_MAX_LEVELS                    supervisor walk bound (default 10)
    APPROVAL_HOURS_PER_LEVEL               preview estimate per level (default 24)
    APPROVAL_DIRECTORY_FILE                JSON org chart → StaticDirectory
    APPROVAL_NOTIFICATIONS                 in_app | log | none
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approval_engine_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _key(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, default)
    return value.strip().lower() if value else None


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

    # Fixed role holders
    APPROVAL_FINANCE_OFFICER_KEY = _key("APPROVAL_FINANCE_OFFICER_KEY")
    APPROVAL_BUSINESS_HEAD_KEY = _key("APPROVAL_BUSINESS_HEAD_KEY")
    APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY = _key("APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY")
    APPROVAL_GRADING_FALLBACK_KEY = _key("APPROVAL_GRADING_FALLBACK_KEY")

    # Walk bound and preview estimate
    APPROVAL_MAX_LEVELS = int(os.getenv("APPROVAL_MAX_LEVELS", "10"))
    APPROVAL_HOURS_PER_LEVEL = int(os.getenv("APPROVAL_HOURS_PER_LEVEL", "24"))

    # Collaborators
    APPROVAL_DIRECTORY_FILE = os.getenv("APPROVAL_DIRECTORY_FILE")
    APPROVAL_NOTIFICATIONS = os.getenv("APPROVAL_NOTIFICATIONS", "in_app")


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
    # SQLite memory DB does not accept pool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}

    APPROVAL_FINANCE_OFFICER_KEY = "finance@corp.example"
    APPROVAL_BUSINESS_HEAD_KEY = "president@corp.example"
    APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY = "supply@corp.example"
    APPROVAL_GRADING_FALLBACK_KEY = "president@corp.example"
    APPROVAL_DIRECTORY_FILE = None
    APPROVAL_NOTIFICATIONS = "in_app"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

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
        if not self.APPROVAL_FINANCE_OFFICER_KEY:
            raise RuntimeError("APPROVAL_FINANCE_OFFICER_KEY must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
