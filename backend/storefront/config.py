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

    # Upper bound for a single checkout / status-change transaction
    ORDER_TRANSACTION_TIMEOUT_SECONDS = float(os.environ.get("ORDER_TRANSACTION_TIMEOUT_SECONDS", "10"))

    # How long an add-to-cart holds reserved stock before the sweep releases it
    CART_RESERVATION_TTL_MINUTES = int(os.environ.get("CART_RESERVATION_TTL_MINUTES", "15"))

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

    # Bounded retry budget used by the HTTP/CLI layer for transient conflicts
    RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))

    # Shared secret the payment provider sends in X-Webhook-Secret (unset: not checked)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET") or None

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = {
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    }
