"""
Gateway webhooks
---
POST /api/v1/webhooks/stripe

    bad signature / malformed body -> 400 (WebhookVerificationError handler)
    unknown event type             -> 200, nothing changes
    handled event                  -> 200 after commit
    handler raised                 -> 500, Stripe redelivers
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cashier.api.deps import get_dispatcher, get_gateway, get_gateway_config
from cashier.db.engine import get_session
from cashier.gateway.base import Gateway, GatewayConfig
from cashier.services.webhooks import (
    WebhookContext,
    WebhookDispatcher,
    parse_event,
    verify_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    session: AsyncSession = Depends(get_session),
    gateway: Gateway = Depends(get_gateway),
    config: GatewayConfig = Depends(get_gateway_config),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    body = await request.body()
    if config.webhook_secret:
        verify_signature(body, stripe_signature, config.webhook_secret, config.webhook_tolerance)
    else:
        logger.debug("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")

    event = parse_event(body)
    await dispatcher.dispatch(event, WebhookContext(session=session, gateway=gateway, source="stripe"))
    await session.commit()
    return {"status": "ok"}
