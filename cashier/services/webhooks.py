"""
Webhook reconciliation
---
Keeps local subscription rows in line with gateway events.

    raw body -> verify_signature -> parse_event -> WebhookDispatcher.dispatch
             -> handler(event, ctx) -> row update + payment_events entry

The dispatcher holds an explicit {event_type: handler} table built once at
startup. Unknown event types are logged and ignored so the gateway stops
redelivering them. Exceptions raised inside a matched handler propagate,
which turns into a 5xx and a redelivery.

Gateways deliver at least once and out of order. The dispatcher does not
deduplicate by event id; each handler is written so that replaying the
same event leaves the row unchanged.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cashier.db.repository import SubscriptionRepository, UserRepository, log_payment_event
from cashier.db.subscription_tables import SubscriptionRow
from cashier.errors import WebhookVerificationError
from cashier.gateway.base import Gateway
from cashier.gateway.stripe import StripeGateway
from cashier.models.subscription import SubscriptionStatus
from cashier.services.lifecycle import utcnow
from cashier.services.subscriptions import sync_subscription

logger = logging.getLogger(__name__)


# ── Verification & parsing ────────────────────────────────────────────────────

def verify_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> None:
    """Verify a Stripe v1 webhook signature.

    1. Extract timestamp and v1 signatures from the header
    2. Compute HMAC-SHA256 of "{timestamp}.{body}" with the endpoint secret
    3. Compare (timing-safe) and check timestamp tolerance
    """
    if not sig_header:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    timestamp = ""
    signatures: list[str] = []
    for item in sig_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            raise WebhookVerificationError("Invalid Stripe-Signature header")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise WebhookVerificationError("Missing timestamp or signature")
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookVerificationError("Invalid signature timestamp") from None

    current = time.time() if now is None else now
    if tolerance and abs(current - signed_at) > tolerance:
        raise WebhookVerificationError("Webhook timestamp outside the tolerance zone")

    expected = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + payload,
        hashlib.sha256,
    ).hexdigest()

    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookVerificationError("Invalid signature")


@dataclass
class WebhookEvent:
    type: str
    id: Optional[str] = None
    data_object: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def parse_event(payload: bytes | str) -> WebhookEvent:
    """Parse a webhook body. Anything but an object with a string `type` is rejected."""
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookVerificationError(f"Webhook body is not valid JSON: {exc}") from exc

    if not isinstance(body, dict):
        raise WebhookVerificationError("Webhook body must be a JSON object")
    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookVerificationError("Webhook body has no event type")
    event_id = body.get("id")
    if event_id is not None and not isinstance(event_id, str):
        raise WebhookVerificationError("Webhook event id must be a string")

    data = body.get("data") or {}
    data_object = data.get("object") if isinstance(data, dict) else None
    if data_object is None:
        data_object = {}
    if not isinstance(data_object, dict):
        raise WebhookVerificationError("Webhook data.object must be an object")

    return WebhookEvent(type=event_type, id=event_id, data_object=data_object, raw=body)


def subscription_object(event: WebhookEvent) -> dict:
    """The event's subscription payload, refused when id or status is unusable."""
    data = event.data_object
    for key in ("id", "status"):
        value = data.get(key)
        if not isinstance(value, str) or not value:
            raise WebhookVerificationError(f"{event.type} payload has no subscription {key}")
    try:
        SubscriptionStatus.from_gateway(data["status"])
    except ValueError as exc:
        raise WebhookVerificationError(f"{event.type} payload: {exc}") from exc
    return data


_SEGMENTS = re.compile(r"[._]")


def handler_name(event_type: str, camel: bool = False) -> str:
    """Map an event type to its handler method name.

    "customer.subscription.deleted" -> "handle_customer_subscription_deleted"
    (or "handleCustomerSubscriptionDeleted" with camel=True)
    """
    parts = [p for p in _SEGMENTS.split(event_type) if p]
    if camel:
        return "handle" + "".join(p[:1].upper() + p[1:] for p in parts)
    return "handle_" + "_".join(p.lower() for p in parts)


# ── Dispatcher ────────────────────────────────────────────────────────────────

@dataclass
class WebhookContext:
    """Per-delivery collaborators handed to every handler."""
    session: AsyncSession
    gateway: Gateway
    source: str = "stripe"


Handler = Callable[[WebhookEvent, WebhookContext], Awaitable[None]]


class WebhookDispatcher:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    @classmethod
    def from_handlers(cls, handler_set: Any) -> "WebhookDispatcher":
        """Build the table from a handler set's `events`, resolved by naming convention.

        Fails at construction when an advertised event has no handler method.
        """
        dispatcher = cls()
        for event_type in handler_set.events:
            method = getattr(handler_set, handler_name(event_type), None)
            if method is None:
                raise ValueError(
                    f"{type(handler_set).__name__} lists {event_type!r} but has no {handler_name(event_type)}()"
                )
            dispatcher.register(event_type, method)
        return dispatcher

    def register(self, event_type: str, handler: Handler) -> None:
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("Webhook event type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {event_type!r} is not callable")
        if event_type in self._handlers:
            raise ValueError(f"A handler for {event_type!r} is already registered")
        self._handlers[event_type] = handler

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: WebhookEvent, ctx: WebhookContext) -> bool:
        """Run the handler for `event`. Returns False when the type is not handled."""
        handler = self._handlers.get(event.type)
        context = {"gateway": ctx.source, "event_type": event.type, "event_id": event.id}
        if handler is None:
            logger.info("Ignoring unhandled webhook %s (%s)", event.type, event.id, extra=context)
            return False
        logger.info("Handling webhook %s (%s)", event.type, event.id, extra=context)
        await handler(event, ctx)
        return True


# ── Default handlers ──────────────────────────────────────────────────────────

class SubscriptionWebhookHandlers:
    """Stripe subscription/customer events. Every handler is idempotent."""

    events = (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.updated",
        "customer.deleted",
        "invoice.payment_action_required",
    )

    def __init__(self, app_url: str = ""):
        self.app_url = app_url.rstrip("/")

    @staticmethod
    def _log(ctx: WebhookContext, event: WebhookEvent, *, user_id=None, subscription_id=None, **payload) -> None:
        log_payment_event(
            ctx.session, event.type, ctx.source,
            user_id=user_id,
            subscription_id=subscription_id,
            gateway_event_id=event.id,
            payload=payload or None,
        )

    async def handle_customer_subscription_created(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = subscription_object(event)
        user = await UserRepository(ctx.session).by_customer_id(data.get("customer") or "")
        if user is None:
            logger.warning("Subscription %s created for unknown customer %s", data.get("id"), data.get("customer"))
            return
        subs = SubscriptionRepository(ctx.session)
        if await subs.by_gateway_id(data["id"]) is not None:
            return

        remote = StripeGateway.parse_subscription(data)
        name = (data.get("metadata") or {}).get("name") or "default"
        sub = SubscriptionRow(
            id=str(uuid.uuid4()),
            user_id=user.id,
            name=name,
            gateway_id=remote.id,
            gateway_plan=remote.plan,
            status=remote.status,
            quantity=max(1, remote.quantity),
            trial_ends_at=remote.trial_end,
        )
        sync_subscription(sub, remote)
        subs.add(sub)
        self._log(ctx, event, user_id=user.id, subscription_id=sub.id, gateway_id=remote.id, status=remote.status)

    async def handle_customer_subscription_updated(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = subscription_object(event)
        sub = await SubscriptionRepository(ctx.session).by_gateway_id(data["id"])
        if sub is None:
            logger.warning("Subscription update for unknown gateway sub: %s", data.get("id"))
            return

        remote = StripeGateway.parse_subscription(data)
        if sub.ended() and sub.status == SubscriptionStatus.CANCELLED.value and remote.status != sub.status:
            logger.info(
                "Ignoring %s (status=%s) for ended subscription %s", event.id, remote.status, sub.gateway_id
            )
            return
        sync_subscription(sub, remote)
        self._log(
            ctx, event, user_id=sub.user_id, subscription_id=sub.id,
            gateway_id=sub.gateway_id, status=sub.status, plan=sub.gateway_plan,
        )

    async def handle_customer_subscription_deleted(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = event.data_object
        sub = await SubscriptionRepository(ctx.session).by_gateway_id(data.get("id") or "")
        if sub is None or sub.ended():
            return

        sub.status = SubscriptionStatus.CANCELLED.value
        sub.ends_at = utcnow()
        self._log(ctx, event, user_id=sub.user_id, subscription_id=sub.id, gateway_id=sub.gateway_id)
        logger.info("Subscription ended by gateway: %s (user=%s)", sub.gateway_id, sub.user_id)

    async def handle_customer_updated(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = event.data_object
        user = await UserRepository(ctx.session).by_customer_id(data.get("id") or "")
        if user is None:
            return

        customer = StripeGateway.parse_customer(data)
        default_pm = (data.get("invoice_settings") or {}).get("default_payment_method")
        if customer.card_last_four is None and (default_pm or data.get("default_source")):
            if ctx.gateway.name == "braintree":
                logger.info(
                    "Card on Stripe customer %s not expanded; Braintree cannot look it up", user.gateway_customer_id
                )
                self._log(ctx, event, user_id=user.id, card_brand=user.card_brand)
                return
            # Webhook payloads carry ids only; fetch the expanded customer
            customer = await ctx.gateway.get_customer(user.gateway_customer_id)
        user.card_brand = customer.card_brand
        user.card_last_four = customer.card_last_four
        self._log(ctx, event, user_id=user.id, card_brand=user.card_brand)

    async def handle_customer_deleted(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = event.data_object
        user = await UserRepository(ctx.session).by_customer_id(data.get("id") or "")
        if user is None:
            return

        now = utcnow()
        for sub in await SubscriptionRepository(ctx.session).list_for_user(user.id):
            if not sub.ended(now):
                sub.status = SubscriptionStatus.CANCELLED.value
                sub.ends_at = now
        customer_id = user.gateway_customer_id
        user.gateway_customer_id = None
        user.card_brand = None
        user.card_last_four = None
        user.paypal_email = None
        self._log(ctx, event, user_id=user.id, customer_id=customer_id)
        logger.info("Gateway customer %s deleted; user %s detached", customer_id, user.id)

    async def handle_invoice_payment_action_required(self, event: WebhookEvent, ctx: WebhookContext) -> None:
        data = event.data_object
        intent = data.get("payment_intent")
        payment_id = intent.get("id") if isinstance(intent, dict) else intent
        if not payment_id:
            return
        user = await UserRepository(ctx.session).by_customer_id(data.get("customer") or "")
        url = f"{self.app_url}/api/v1/payments/{payment_id}"
        logger.warning(
            "Payment %s needs customer confirmation (user=%s): %s",
            payment_id, user.id if user else None, url,
        )
        self._log(
            ctx, event, user_id=user.id if user else None,
            invoice_id=data.get("id"), payment_id=payment_id, confirmation_url=url,
        )


def build_dispatcher(app_url: str = "") -> WebhookDispatcher:
    return WebhookDispatcher.from_handlers(SubscriptionWebhookHandlers(app_url))
