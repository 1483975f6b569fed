"""
Application configuration.

This module defines the configuration settings for the Flask application: database connection,
timeouts, secret key, notification dispatch and logging. It uses environment variables for
sensitive information and defaults for development. In production, make sure to set the
appropriate environment variables and a real secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

DEV_SECRET_KEY = "dev-change-me-please"


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", DEV_SECRET_KEY)

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'stockroom.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Every DB call is bounded; a timeout on a write is surfaced to the caller.
    DB_TIMEOUT_SECONDS = _int_env("DB_TIMEOUT_SECONDS", 15)

    # CSRF protection for mutating calls (X-CSRFToken header)
    WTF_CSRF_ENABLED = _bool_env("WTF_CSRF_ENABLED", True)

    # Request codes: REQ-2025-001
    REQUEST_CODE_PREFIX = os.environ.get("REQUEST_CODE_PREFIX", "REQ")

    # Stock alert cutoff below the per-item minimum threshold
    STOCK_CRITICAL_QUANTITY = _int_env("STOCK_CRITICAL_QUANTITY", 2)

    # Post-commit notifications run on a worker pool unless disabled
    NOTIFY_ASYNC = _bool_env("NOTIFY_ASYNC", True)
    NOTIFY_WORKERS = _int_env("NOTIFY_WORKERS", 4)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _bool_env("LOG_JSON", True)

    DEFAULT_PAGE_SIZE = _int_env("DEFAULT_PAGE_SIZE", 20)
    MAX_PAGE_SIZE = 100

    # App name (used in API responses)
    APP_NAME = "Stockroom"

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and self.SECRET_KEY == DEV_SECRET_KEY:
            raise RuntimeError("SECRET_KEY must be set in production.")
