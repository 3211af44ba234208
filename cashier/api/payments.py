"""
Payment confirmation
---
GET /api/v1/payments/{payment_id}?redirect=/billing

Everything the frontend needs to finish a payment that came back as
PaymentFailure / ActionRequired (card re-entry or 3-D Secure via
Stripe.js). Only the whitelisted intent fields are returned.
"""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urljoin, urlsplit

from fastapi import APIRouter, Depends, HTTPException, Query

from config.settings import settings
from cashier.api.deps import get_gateway, get_gateway_config
from cashier.errors import NotFoundError
from cashier.gateway.base import Gateway, GatewayConfig
from cashier.models.invoice import format_amount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

CONFIRMATION_FAILED = "Something went wrong when trying to confirm the payment. Please try again."


def safe_redirect(target: Optional[str], app_url: str) -> str:
    """Resolve `target` against the app URL; refuse anything off-host."""
    base = app_url.rstrip("/") + "/"
    if not target:
        return base
    resolved = urljoin(base, target)
    parts, app = urlsplit(resolved), urlsplit(base)
    if parts.scheme not in ("http", "https") or parts.netloc != app.netloc:
        raise HTTPException(400, "Redirect URL must stay on this site")
    return resolved


@router.get("/{payment_id}")
async def show_payment(
    payment_id: str,
    redirect: Optional[str] = Query(None, max_length=2048),
    redirect_status: Optional[str] = Query(None),
    source_type: str = Query(""),
    gateway: Gateway = Depends(get_gateway),
    config: GatewayConfig = Depends(get_gateway_config),
):
    target = safe_redirect(redirect, settings.APP_URL)

    payment = await gateway.get_payment(payment_id)

    customer = None
    if payment.customer:
        try:
            found = await gateway.get_customer(payment.customer)
            customer = {"id": found.id, "email": found.email}
        except NotFoundError:
            logger.warning("Payment %s references missing customer %s", payment.id, payment.customer)

    return {
        "gateway_key": config.publishable_key,
        "amount": {
            "formatted": format_amount(payment.amount, payment.currency),
            "value": payment.amount,
            "currency": payment.currency,
        },
        "payment_intent": payment.summary(),
        "payment_method": source_type,
        "is_succeeded": payment.is_succeeded(),
        "is_cancelled": payment.is_cancelled(),
        "customer": customer,
        "redirect": target,
        "error_message": CONFIRMATION_FAILED if redirect_status == "failed" else None,
    }
