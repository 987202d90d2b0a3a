# backend/storefront/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Settlement tuning (amounts in cents)
    PAYMENT_TOLERANCE_CENTS = int(os.environ.get("PAYMENT_TOLERANCE_CENTS", "1"))
    SETTLEMENT_CONFLICT_RETRIES = int(os.environ.get("SETTLEMENT_CONFLICT_RETRIES", "1"))
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
