# backend/tradeledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tradeledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tradeledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Split tenders must sum to the sale total within this many cents
    SPLIT_PAYMENT_TOLERANCE_CENTS = int(os.environ.get("SPLIT_PAYMENT_TOLERANCE_CENTS", "1"))

    # One loyalty point per whole currency unit spent
    LOYALTY_CENTS_PER_POINT = int(os.environ.get("LOYALTY_CENTS_PER_POINT", "100"))

    # Used by the overdue report when a party has no terms of its own
    DEFAULT_PAYMENT_TERMS_DAYS = int(os.environ.get("DEFAULT_PAYMENT_TERMS_DAYS", "30"))

    # Optimistic-lock / lock-timeout retry policy for units of work
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF_SECONDS = float(os.environ.get("DB_RETRY_BACKOFF_SECONDS", "0.1"))
