"""Tests for webhook verification, dispatch and the Stripe webhook endpoint."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from cashier.api.deps import get_dispatcher, get_gateway_config
from cashier.api.main import app
from cashier.db import engine as engine_mod
from cashier.db.subscription_tables import PaymentEventRow, SubscriptionRow
from cashier.db.user_tables import UserRow
from cashier.errors import WebhookVerificationError
from cashier.gateway.base import GatewayConfig, GatewayCustomer
from cashier.services.lifecycle import as_utc
from cashier.services.webhooks import (
    SubscriptionWebhookHandlers,
    WebhookContext,
    WebhookDispatcher,
    WebhookEvent,
    build_dispatcher,
    handler_name,
    parse_event,
    verify_signature,
)

SECRET = "whsec_test_secret"
URL = "/api/v1/webhooks/stripe"


# ── Helpers ──────────────────────────────────────────────────────────────────

def _make_stripe_signature(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _subscription_object(**overrides) -> dict:
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_end": int(time.time()) + 30 * 86400,
        "trial_end": None,
        "items": {"data": [{"id": "si_1", "plan": {"id": "monthly-10"}, "quantity": 1}]},
    }
    obj.update(overrides)
    return obj


async def _fetch_sub(gateway_id: str = "sub_1"):
    async with engine_mod.async_session() as s:
        result = await s.execute(select(SubscriptionRow).where(SubscriptionRow.gateway_id == gateway_id))
        return result.scalar_one_or_none()


async def _fetch_user(user_id: str = "user-1"):
    async with engine_mod.async_session() as s:
        return await s.get(UserRow, user_id)


async def _event_rows(event_type: str | None = None):
    async with engine_mod.async_session() as s:
        stmt = select(PaymentEventRow)
        if event_type:
            stmt = stmt.where(PaymentEventRow.event_type == event_type)
        return list((await s.execute(stmt)).scalars().all())


@pytest_asyncio.fixture
async def customer(session, user):
    user.gateway_customer_id = "cus_1"
    user.card_brand = "visa"
    user.card_last_four = "4242"
    session.add(SubscriptionRow(
        id="row-1", user_id=user.id, name="default", gateway_id="sub_1",
        gateway_plan="monthly-10", status="active", quantity=1,
    ))
    await session.commit()
    return user


# ── Signature verification ───────────────────────────────────────────────────

class TestStripeSignature:
    def test_valid_signature(self):
        payload = b'{"type": "test"}'
        verify_signature(payload, _make_stripe_signature(payload), SECRET)

    def test_any_matching_v1_signature_accepted(self):
        payload = b'{"type": "test"}'
        ts = int(time.time())
        good = _make_stripe_signature(payload, timestamp=ts).split("v1=")[1]
        header = f"t={ts},v1={'0' * 64},v1={good}"
        verify_signature(payload, header, SECRET)

    def test_wrong_secret(self):
        payload = b'{"type": "test"}'
        with pytest.raises(WebhookVerificationError, match="Invalid signature"):
            verify_signature(payload, _make_stripe_signature(payload, secret="whsec_other"), SECRET)

    def test_tampered_payload(self):
        header = _make_stripe_signature(b'{"amount": 100}')
        with pytest.raises(WebhookVerificationError):
            verify_signature(b'{"amount": 999}', header, SECRET)

    def test_missing_header(self):
        with pytest.raises(WebhookVerificationError, match="Missing"):
            verify_signature(b"{}", None, SECRET)

    def test_malformed_header(self):
        with pytest.raises(WebhookVerificationError):
            verify_signature(b"{}", "garbage", SECRET)

    def test_header_without_v1(self):
        with pytest.raises(WebhookVerificationError):
            verify_signature(b"{}", f"t={int(time.time())}", SECRET)

    def test_non_numeric_timestamp(self):
        with pytest.raises(WebhookVerificationError):
            verify_signature(b"{}", "t=yesterday,v1=abc", SECRET)

    def test_expired_timestamp(self):
        payload = b'{"type": "test"}'
        old = int(time.time()) - 3600
        with pytest.raises(WebhookVerificationError, match="tolerance"):
            verify_signature(payload, _make_stripe_signature(payload, timestamp=old), SECRET, tolerance=300)

    def test_future_timestamp_outside_tolerance(self):
        payload = b'{"type": "test"}'
        ts = 1_000_000
        header = _make_stripe_signature(payload, timestamp=ts)
        with pytest.raises(WebhookVerificationError):
            verify_signature(payload, header, SECRET, tolerance=300, now=ts - 600)
        verify_signature(payload, header, SECRET, tolerance=300, now=ts - 100)


# ── Parsing ──────────────────────────────────────────────────────────────────

class TestParseEvent:
    def test_parses_envelope(self):
        event = parse_event(_stripe_event("customer.updated", {"id": "cus_1"}))
        assert event.type == "customer.updated"
        assert event.id == "evt_test_1"
        assert event.data_object == {"id": "cus_1"}

    def test_missing_data_is_empty_object(self):
        event = parse_event(b'{"type": "ping"}')
        assert event.data_object == {}
        assert event.id is None

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2, 3]",
        b'{"id": "evt_1"}',
        b'{"type": ""}',
        b'{"type": "x", "id": 42}',
        b'{"type": "x", "data": {"object": "cus_1"}}',
    ])
    def test_rejects_malformed(self, body):
        with pytest.raises(WebhookVerificationError):
            parse_event(body)


class TestHandlerNames:
    def test_snake_case(self):
        assert handler_name("customer.subscription.deleted") == "handle_customer_subscription_deleted"
        assert handler_name("invoice.payment_action_required") == "handle_invoice_payment_action_required"

    def test_camel_case(self):
        assert handler_name("customer.subscription.deleted", camel=True) == "handleCustomerSubscriptionDeleted"
        assert handler_name("invoice.payment_action_required", camel=True) == "handleInvoicePaymentActionRequired"


# ── Dispatcher ───────────────────────────────────────────────────────────────

class TestDispatcher:
    def test_default_table_covers_handler_events(self):
        dispatcher = build_dispatcher("https://app.example.com")
        assert dispatcher.event_types == sorted(SubscriptionWebhookHandlers.events)
        assert dispatcher.handles("customer.subscription.deleted")
        assert not dispatcher.handles("foo.bar")

    def test_register_validation(self):
        dispatcher = WebhookDispatcher()

        async def handler(event, ctx):
            pass

        with pytest.raises(ValueError):
            dispatcher.register("  ", handler)
        with pytest.raises(TypeError):
            dispatcher.register("invoice.paid", "not-a-function")
        dispatcher.register("invoice.paid", handler)
        with pytest.raises(ValueError):
            dispatcher.register("invoice.paid", handler)

    def test_missing_handler_method_fails_at_construction(self):
        class Incomplete:
            events = ("invoice.paid",)

        with pytest.raises(ValueError, match="handle_invoice_paid"):
            WebhookDispatcher.from_handlers(Incomplete())

    @pytest.mark.asyncio
    async def test_dispatch_runs_matching_handler_only(self):
        seen = []

        async def handler(event, ctx):
            seen.append(event.id)

        dispatcher = WebhookDispatcher()
        dispatcher.register("invoice.paid", handler)
        ctx = WebhookContext(session=None, gateway=None)

        assert await dispatcher.dispatch(WebhookEvent(type="invoice.paid", id="evt_1"), ctx) is True
        assert await dispatcher.dispatch(WebhookEvent(type="foo.bar", id="evt_2"), ctx) is False
        assert seen == ["evt_1"]


# ── Endpoint ─────────────────────────────────────────────────────────────────

class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_unknown_event_is_acknowledged_without_changes(self, client, customer):
        resp = await client.post(URL, content=_stripe_event("foo.bar", {"id": "sub_1", "status": "unpaid"}))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        sub = await _fetch_sub()
        assert sub.status == "active"
        assert sub.ends_at is None
        assert await _event_rows() == []

    @pytest.mark.asyncio
    async def test_subscription_deleted_is_idempotent(self, client, customer):
        body = _stripe_event("customer.subscription.deleted", _subscription_object(status="canceled"))

        resp = await client.post(URL, content=body)
        assert resp.status_code == 200
        once = await _fetch_sub()
        assert once.status == "cancelled"
        assert once.ended()

        resp = await client.post(URL, content=body)
        assert resp.status_code == 200
        twice = await _fetch_sub()
        assert (twice.status, twice.ends_at) == (once.status, once.ends_at)
        assert len(await _event_rows("customer.subscription.deleted")) == 1

    @pytest.mark.asyncio
    async def test_deleted_for_unknown_subscription(self, client, customer):
        body = _stripe_event("customer.subscription.deleted", _subscription_object(id="sub_unknown"))
        resp = await client.post(URL, content=body)
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_updated_cancel_at_period_end_then_reactivated(self, client, customer):
        period_end = int(time.time()) + 10 * 86400
        cancel = _subscription_object(
            cancel_at_period_end=True,
            current_period_end=period_end,
            items={"data": [{"id": "si_1", "plan": {"id": "yearly-100"}, "quantity": 3}]},
        )
        resp = await client.post(URL, content=_stripe_event("customer.subscription.updated", cancel))
        assert resp.status_code == 200

        sub = await _fetch_sub()
        assert as_utc(sub.ends_at) == datetime.fromtimestamp(period_end, tz=timezone.utc)
        assert sub.on_grace_period()
        assert sub.gateway_plan == "yearly-100"
        assert sub.quantity == 3

        resp = await client.post(
            URL, content=_stripe_event("customer.subscription.updated", _subscription_object(), "evt_test_2")
        )
        assert resp.status_code == 200
        sub = await _fetch_sub()
        assert sub.ends_at is None
        assert sub.active()

    @pytest.mark.asyncio
    async def test_updated_incomplete_expired_ends_subscription(self, client, customer):
        body = _stripe_event("customer.subscription.updated", _subscription_object(status="incomplete_expired"))
        resp = await client.post(URL, content=body)
        assert resp.status_code == 200

        sub = await _fetch_sub()
        assert sub.status == "incomplete_expired"
        assert sub.ends_at is not None
        assert not sub.active()

    @pytest.mark.asyncio
    async def test_updated_trial_end_synced(self, client, customer):
        trial_end = int(time.time()) + 5 * 86400
        body = _stripe_event(
            "customer.subscription.updated", _subscription_object(status="trialing", trial_end=trial_end)
        )
        await client.post(URL, content=body)

        sub = await _fetch_sub()
        assert sub.status == "trialing"
        assert as_utc(sub.trial_ends_at) == datetime.fromtimestamp(trial_end, tz=timezone.utc)
        assert sub.on_trial()

    @pytest.mark.asyncio
    async def test_created_adds_row_once(self, client, customer):
        trial_end = int(time.time()) + 7 * 86400
        obj = _subscription_object(
            id="sub_new", status="trialing", trial_end=trial_end, metadata={"name": "swimming"},
        )
        body = _stripe_event("customer.subscription.created", obj)

        assert (await client.post(URL, content=body)).status_code == 200
        assert (await client.post(URL, content=body)).status_code == 200

        sub = await _fetch_sub("sub_new")
        assert sub.name == "swimming"
        assert sub.user_id == customer.id
        assert sub.on_trial()
        assert len(await _event_rows("customer.subscription.created")) == 1

    @pytest.mark.asyncio
    async def test_created_for_unknown_customer_ignored(self, client, customer):
        body = _stripe_event("customer.subscription.created", _subscription_object(id="sub_x", customer="cus_nobody"))
        assert (await client.post(URL, content=body)).status_code == 200
        assert await _fetch_sub("sub_x") is None

    @pytest.mark.asyncio
    async def test_customer_deleted_detaches_user(self, client, customer):
        resp = await client.post(URL, content=_stripe_event("customer.deleted", {"id": "cus_1", "deleted": True}))
        assert resp.status_code == 200

        user = await _fetch_user()
        assert user.gateway_customer_id is None
        assert user.card_last_four is None
        sub = await _fetch_sub()
        assert sub.ended()
        assert sub.status == "cancelled"

    @pytest.mark.asyncio
    async def test_customer_updated_with_inline_card(self, client, customer):
        obj = {
            "id": "cus_1",
            "invoice_settings": {"default_payment_method": {"id": "pm_1", "card": {"brand": "amex", "last4": "0005"}}},
        }
        await client.post(URL, content=_stripe_event("customer.updated", obj))

        user = await _fetch_user()
        assert (user.card_brand, user.card_last_four) == ("amex", "0005")

    @pytest.mark.asyncio
    async def test_customer_updated_fetches_expanded_customer(self, client, customer, gateway):
        gateway.customers["cus_1"] = GatewayCustomer(id="cus_1", card_brand="discover", card_last_four="1117")
        obj = {"id": "cus_1", "invoice_settings": {"default_payment_method": "pm_2"}}

        await client.post(URL, content=_stripe_event("customer.updated", obj))

        assert ("get_customer", "cus_1") in gateway.calls
        user = await _fetch_user()
        assert (user.card_brand, user.card_last_four) == ("discover", "1117")

    @pytest.mark.asyncio
    async def test_payment_action_required_logs_confirmation_url(self, client, customer):
        obj = {"id": "in_1", "customer": "cus_1", "payment_intent": "pi_123"}
        resp = await client.post(URL, content=_stripe_event("invoice.payment_action_required", obj))
        assert resp.status_code == 200

        events = await _event_rows("invoice.payment_action_required")
        assert len(events) == 1
        assert events[0].user_id == customer.id
        assert events[0].payload["confirmation_url"].endswith("/api/v1/payments/pi_123")

    @pytest.mark.asyncio
    async def test_customer_updated_under_braintree_keeps_card(self, client, customer, gateway):
        gateway.name = "braintree"
        obj = {"id": "cus_1", "invoice_settings": {"default_payment_method": "pm_2"}}

        resp = await client.post(URL, content=_stripe_event("customer.updated", obj))

        assert resp.status_code == 200
        assert not any(method == "get_customer" for method, _ in gateway.calls)
        user = await _fetch_user()
        assert (user.card_brand, user.card_last_four) == ("visa", "4242")

    @pytest.mark.asyncio
    async def test_stale_update_after_delete_keeps_subscription_ended(self, client, customer):
        deleted = _stripe_event("customer.subscription.deleted", _subscription_object(status="canceled"), "evt_del")
        assert (await client.post(URL, content=deleted)).status_code == 200
        ended = await _fetch_sub()

        stale = _stripe_event("customer.subscription.updated", _subscription_object(), "evt_old_update")
        resp = await client.post(URL, content=stale)

        assert resp.status_code == 200
        sub = await _fetch_sub()
        assert sub.status == "cancelled"
        assert sub.ends_at == ended.ends_at
        assert not sub.active()
        assert await _event_rows("customer.subscription.updated") == []


# ── Malformed payloads ───────────────────────────────────────────────────────

class TestMalformedPayloads:
    @pytest.mark.asyncio
    async def test_update_without_status_rejected(self, client, customer):
        obj = {"id": "sub_1", "customer": "cus_1"}
        resp = await client.post(URL, content=_stripe_event("customer.subscription.updated", obj))

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_webhook"
        sub = await _fetch_sub()
        assert sub.status == "active"
        assert sub.ends_at is None

    @pytest.mark.asyncio
    async def test_update_with_unknown_status_rejected(self, client, customer):
        obj = _subscription_object(status="paused_forever")
        resp = await client.post(URL, content=_stripe_event("customer.subscription.updated", obj))
        assert resp.status_code == 400
        assert (await _fetch_sub()).status == "active"

    @pytest.mark.asyncio
    async def test_create_without_id_rejected(self, client, customer):
        obj = {"customer": "cus_1", "status": "active"}
        resp = await client.post(URL, content=_stripe_event("customer.subscription.created", obj))

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_webhook"
        assert await _event_rows("customer.subscription.created") == []

    @pytest.mark.asyncio
    async def test_create_with_numeric_id_rejected(self, client, customer):
        obj = _subscription_object(id=42)
        resp = await client.post(URL, content=_stripe_event("customer.subscription.created", obj))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(self, client):
        resp = await client.post(URL, content=b"definitely not json")
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_webhook"


class TestSignedEndpoint:
    @pytest.fixture(autouse=True)
    def signing_secret(self, gateway):
        app.dependency_overrides[get_gateway_config] = lambda: GatewayConfig(
            name="stripe", webhook_secret=SECRET, webhook_tolerance=300,
        )

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_handlers(self, client, customer):
        body = _stripe_event("customer.subscription.deleted", _subscription_object())
        resp = await client.post(URL, content=body, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_webhook"
        sub = await _fetch_sub()
        assert sub.ends_at is None

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client, customer):
        resp = await client.post(URL, content=_stripe_event("foo.bar", {}))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_valid_signature_dispatched(self, client, customer):
        body = _stripe_event("customer.subscription.deleted", _subscription_object())
        resp = await client.post(URL, content=body, headers={"Stripe-Signature": _make_stripe_signature(body)})

        assert resp.status_code == 200
        assert (await _fetch_sub()).ended()


class TestHandlerFailure:
    @pytest.mark.asyncio
    async def test_handler_error_returns_500_for_redelivery(self, gateway, customer):
        async def explode(event, ctx):
            raise RuntimeError("boom")

        dispatcher = WebhookDispatcher()
        dispatcher.register("invoice.paid", explode)
        app.dependency_overrides[get_dispatcher] = lambda: dispatcher
        try:
            transport = ASGITransport(app=app, raise_app_exceptions=False)
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                resp = await ac.post(URL, content=_stripe_event("invoice.paid", {"id": "in_1"}))
        finally:
            app.dependency_overrides.pop(get_dispatcher, None)

        assert resp.status_code == 500
        assert resp.json()["error"] == "internal_error"
        assert "boom" not in resp.text

