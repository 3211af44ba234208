"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.ENVIRONMENT == "production"

    if settings.BILLING_GATEWAY not in ("stripe", "braintree"):
        logger.critical("BILLING_GATEWAY must be 'stripe' or 'braintree', got %r", settings.BILLING_GATEWAY)
        sys.exit(1)

    if settings.BILLING_GATEWAY == "stripe":
        if not settings.STRIPE_SECRET_KEY:
            warnings.append("STRIPE_SECRET_KEY not set — gateway calls will be rejected")
        if not settings.STRIPE_PUBLISHABLE_KEY:
            warnings.append("STRIPE_PUBLISHABLE_KEY not set — payment confirmation page cannot load Stripe.js")
        if not settings.STRIPE_WEBHOOK_SECRET:
            if is_prod:
                logger.critical("STRIPE_WEBHOOK_SECRET is not set! Unsigned webhooks would be accepted.")
                sys.exit(1)
            warnings.append("STRIPE_WEBHOOK_SECRET not set — webhook signatures are not verified")
    else:
        missing = [
            name for name in ("BRAINTREE_MERCHANT_ID", "BRAINTREE_PUBLIC_KEY", "BRAINTREE_PRIVATE_KEY")
            if not getattr(settings, name)
        ]
        if missing:
            warnings.append(f"{', '.join(missing)} not set — Braintree calls will fail")

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if is_prod and "sqlite" in settings.DATABASE_URL:
        warnings.append("DATABASE_URL points at SQLite in production")

    if settings.GATEWAY_TIMEOUT_SECONDS <= 0:
        warnings.append("GATEWAY_TIMEOUT_SECONDS must be positive — gateway calls may hang")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
