"""Environment-backed configuration for the billing engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MAX_PAYMENT_FAILURES = 3
DEFAULT_EVENT_RETENTION_DAYS = 30
DEFAULT_MAX_NETWORK_RETRIES = 2


def _get_required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} is required for billing.")
    return value


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}.") from exc


@dataclass(frozen=True)
class BillingConfig:
    stripe_secret_key: str
    webhook_signing_secret: str
    stripe_api_version: Optional[str] = None
    max_network_retries: int = DEFAULT_MAX_NETWORK_RETRIES
    max_payment_failures: int = DEFAULT_MAX_PAYMENT_FAILURES
    event_retention_days: int = DEFAULT_EVENT_RETENTION_DAYS
    admin_jwt_secret: Optional[str] = None


def load_billing_config() -> BillingConfig:
    """Build the billing configuration, failing fast when secrets are missing.

    Both Stripe secrets are mandatory: the engine cannot sync plans without the
    API key and cannot trust inbound events without the webhook secret, so a
    missing value is a startup error rather than a per-request one.
    """

    load_dotenv()

    config = BillingConfig(
        stripe_secret_key=_get_required_env("STRIPE_SECRET_KEY"),
        webhook_signing_secret=_get_required_env("STRIPE_WEBHOOK_SECRET"),
        stripe_api_version=os.getenv("STRIPE_API_VERSION") or None,
        max_network_retries=_get_int_env("STRIPE_MAX_NETWORK_RETRIES", DEFAULT_MAX_NETWORK_RETRIES),
        max_payment_failures=_get_int_env("BILLING_MAX_PAYMENT_FAILURES", DEFAULT_MAX_PAYMENT_FAILURES),
        event_retention_days=_get_int_env("WEBHOOK_EVENT_RETENTION_DAYS", DEFAULT_EVENT_RETENTION_DAYS),
        admin_jwt_secret=os.getenv("ADMIN_JWT_SECRET") or None,
    )

    if config.max_payment_failures < 1:
        raise RuntimeError("BILLING_MAX_PAYMENT_FAILURES must be at least 1.")

    return config
