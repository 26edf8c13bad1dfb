"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from .app.billing.policy import EmailMatchPolicy

# The first deployment shipped its settings with a bundler prefix.
LEGACY_PREFIX = "VITE_"


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment and subscription endpoints."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_price_id: Optional[str]
    stripe_payment_link_url: Optional[str]
    database_url: str
    app_url: str
    token_ttl_minutes: int
    pending_payment_ttl_minutes: int
    trial_period_days: int
    monthly_price_cents: int
    product_name: str
    email_match_policy: EmailMatchPolicy
    admin_api_token: Optional[str]
    trial_sweep_enabled: bool
    trial_sweep_interval_hours: int
    environment: str

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(minutes=self.token_ttl_minutes)

    @property
    def pending_payment_ttl(self) -> timedelta:
        return timedelta(minutes=self.pending_payment_ttl_minutes)

    def env_check(self) -> Mapping[str, bool]:
        """Which required settings are present, without exposing their values."""

        return {
            "has_stripe_secret_key": bool(self.stripe_secret_key),
            "has_stripe_webhook_secret": bool(self.stripe_webhook_secret),
            "has_database_url": bool(self.database_url),
            "has_app_url": bool(self.app_url),
        }


def _lookup(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        for candidate in (name, f"{LEGACY_PREFIX}{name}"):
            value = env.get(candidate)
            if value is not None and value.strip() != "":
                return value.strip()
    return None


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(name: str, value: Optional[str], *, default: int, minimum: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return parsed


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return BillingConfig(
        stripe_secret_key=_lookup(env_mapping, "STRIPE_SECRET_KEY") or "",
        stripe_webhook_secret=_lookup(env_mapping, "STRIPE_WEBHOOK_SECRET") or "",
        stripe_price_id=_lookup(env_mapping, "STRIPE_PRICE_ID"),
        stripe_payment_link_url=_lookup(env_mapping, "STRIPE_PAYMENT_LINK_URL"),
        database_url=_lookup(env_mapping, "DATABASE_URL", "SUPABASE_DB_URL") or "",
        app_url=(_lookup(env_mapping, "APP_URL") or "http://localhost:5173").rstrip("/"),
        token_ttl_minutes=_to_int(
            "PAYMENT_TOKEN_TTL_MINUTES",
            _lookup(env_mapping, "PAYMENT_TOKEN_TTL_MINUTES"),
            default=120,
            minimum=1,
        ),
        pending_payment_ttl_minutes=_to_int(
            "PENDING_PAYMENT_TTL_MINUTES",
            _lookup(env_mapping, "PENDING_PAYMENT_TTL_MINUTES"),
            default=120,
            minimum=1,
        ),
        trial_period_days=_to_int("TRIAL_PERIOD_DAYS", _lookup(env_mapping, "TRIAL_PERIOD_DAYS"), default=7),
        monthly_price_cents=_to_int(
            "MONTHLY_PRICE_CENTS",
            _lookup(env_mapping, "MONTHLY_PRICE_CENTS"),
            default=3500,
            minimum=1,
        ),
        product_name=_lookup(env_mapping, "PRODUCT_NAME") or "EasyList Pro - Monthly Subscription",
        email_match_policy=EmailMatchPolicy.from_setting(_lookup(env_mapping, "EMAIL_MATCH_POLICY")),
        admin_api_token=_lookup(env_mapping, "ADMIN_API_TOKEN"),
        trial_sweep_enabled=_to_bool(_lookup(env_mapping, "TRIAL_SWEEP_ENABLED"), default=False),
        trial_sweep_interval_hours=_to_int(
            "TRIAL_SWEEP_INTERVAL_HOURS",
            _lookup(env_mapping, "TRIAL_SWEEP_INTERVAL_HOURS"),
            default=24,
            minimum=1,
        ),
        environment=(_lookup(env_mapping, "APP_ENV") or "development").lower(),
    )


__all__ = ["BillingConfig", "load_billing_config"]
