# backend/keyshop/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///keyshop.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Omise (PromptPay) gateway
    OMISE_SECRET_KEY = os.environ.get("OMISE_SECRET_KEY")
    OMISE_API_URL = os.environ.get("OMISE_API_URL", "https://api.omise.co")
    OMISE_TIMEOUT_SECONDS = float(os.environ.get("OMISE_TIMEOUT_SECONDS", "15"))

    # Webhook signing secret; the account secret key is used when unset
    OMISE_WEBHOOK_SECRET = os.environ.get("OMISE_WEBHOOK_SECRET")
    # Accept webhook deliveries without a signature header (logged). Off by default.
    OMISE_WEBHOOK_SIGNATURE_OPTIONAL = _env_flag("OMISE_WEBHOOK_SIGNATURE_OPTIONAL")

    STOREFRONT_CURRENCY = os.environ.get("STOREFRONT_CURRENCY", "THB")

    # Payment status polling
    PAYMENT_STATUS_FALLBACK_SECONDS = int(os.environ.get("PAYMENT_STATUS_FALLBACK_SECONDS", "60"))
    PAYMENT_POLL_WINDOW_SECONDS = int(os.environ.get("PAYMENT_POLL_WINDOW_SECONDS", "600"))

    # Key payload resolution (raw GitHub content)
    GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
    SOURCE_FETCH_TIMEOUT_SECONDS = float(os.environ.get("SOURCE_FETCH_TIMEOUT_SECONDS", "10"))
