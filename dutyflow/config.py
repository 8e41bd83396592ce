"""
Duty Verification & Settlement Engine
Configuration classes for the Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

from dutyflow.core.exceptions import ConfigurationError

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'dutyflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

_DEFAULT_ADMIN_ROLES = "main_admin,parallel_admin,admin,teacher"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Duty engine
    DUTY_QUORUM_THRESHOLD = int(os.getenv("DUTY_QUORUM_THRESHOLD", "2"))
    DUTY_ADMIN_ROLES = _env_list("DUTY_ADMIN_ROLES", _DEFAULT_ADMIN_ROLES)
    DUTY_REJECT_TO_PENDING_RECEIPT = _env_bool("DUTY_REJECT_TO_PENDING_RECEIPT", "false")
    DUTY_ALLOW_VOTE_UPSERT = _env_bool("DUTY_ALLOW_VOTE_UPSERT", "true")


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
    SQLALCHEMY_ENGINE_OPTIONS = {}
    DUTY_QUORUM_THRESHOLD = 2
    DUTY_ADMIN_ROLES = tuple(_DEFAULT_ADMIN_ROLES.split(","))
    DUTY_REJECT_TO_PENDING_RECEIPT = False
    DUTY_ALLOW_VOTE_UPSERT = True


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

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


def validate_duty_config(cfg) -> None:
    """Reject engine settings that would make the workflow unusable.

    Raises:
        ConfigurationError: threshold below 1 or no admin roles configured.
    """
    threshold = cfg.get("DUTY_QUORUM_THRESHOLD")
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 1:
        raise ConfigurationError(
            "DUTY_QUORUM_THRESHOLD",
            f"must be an integer >= 1, got {threshold!r}",
        )
    if not cfg.get("DUTY_ADMIN_ROLES"):
        raise ConfigurationError("DUTY_ADMIN_ROLES", "at least one admin role is required")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
