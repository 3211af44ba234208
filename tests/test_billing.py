"""Tests for one-off billing: customers, charges, invoices, refunds."""
from __future__ import annotations

import pytest
from sqlalchemy import select

from cashier.db.subscription_tables import PaymentEventRow
from cashier.errors import ActionRequired, InvalidStateError, NotFoundError, PaymentFailure
from cashier.models.invoice import Invoice
from cashier.services.billing import BillingService


async def _events(session, event_type):
    result = await session.execute(select(PaymentEventRow).where(PaymentEventRow.event_type == event_type))
    return list(result.scalars().all())


@pytest.fixture
def billing(gateway, session):
    return BillingService(gateway, session)


class TestCustomers:
    @pytest.mark.asyncio
    async def test_create_as_customer(self, billing, user):
        await billing.create_as_customer(user, "pm_card_visa")
        assert user.gateway_customer_id.startswith("cus_")
        assert user.card_brand == "visa"

    @pytest.mark.asyncio
    async def test_create_twice_refused(self, billing, user):
        await billing.create_as_customer(user)
        with pytest.raises(InvalidStateError):
            await billing.create_as_customer(user)

    @pytest.mark.asyncio
    async def test_update_card(self, billing, user):
        await billing.create_as_customer(user, "pm_card_visa")
        await billing.update_card(user, "pm_card_mastercard")
        assert (user.card_brand, user.card_last_four) == ("mastercard", "4444")

    @pytest.mark.asyncio
    async def test_operations_need_a_customer(self, billing, user):
        with pytest.raises(InvalidStateError):
            await billing.update_card(user, "pm_card_visa")
        with pytest.raises(InvalidStateError):
            await billing.charge(user, 1000)

    @pytest.mark.asyncio
    async def test_apply_coupon(self, billing, user, gateway):
        await billing.create_as_customer(user)
        await billing.apply_coupon(user, "WELCOME")
        assert gateway.customers[user.gateway_customer_id].coupon_id == "WELCOME"


class TestCharges:
    @pytest.mark.asyncio
    async def test_charge_logs_event(self, billing, user, session):
        await billing.create_as_customer(user, "pm_card_visa")
        payment = await billing.charge(user, 2500, description="Consulting")

        assert payment.is_succeeded()
        events = await _events(session, "charge.succeeded")
        assert len(events) == 1
        assert events[0].amount_cents == 2500
        assert events[0].gateway_event_id == payment.id

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, billing, user, gateway):
        await billing.create_as_customer(user)
        with pytest.raises(ValueError):
            await billing.charge(user, 0)
        assert "charge" not in [m for m, _ in gateway.calls]

    @pytest.mark.asyncio
    async def test_declined_charge(self, billing, user, gateway, session):
        await billing.create_as_customer(user)
        gateway.decline_next = True
        with pytest.raises(PaymentFailure):
            await billing.charge(user, 1000)
        assert await _events(session, "charge.succeeded") == []

    @pytest.mark.asyncio
    async def test_charge_needing_authentication(self, billing, user, gateway):
        await billing.create_as_customer(user)
        gateway.require_action_next = True
        with pytest.raises(ActionRequired) as exc_info:
            await billing.charge(user, 1000)
        assert exc_info.value.payment.client_secret == "secret_123"

    @pytest.mark.asyncio
    async def test_refund_logs_negative_amount(self, billing, user, session):
        await billing.create_as_customer(user)
        payment = await billing.charge(user, 1200)

        refund = await billing.refund(payment.id, user_id=user.id)

        assert refund["amount"] == 1200
        events = await _events(session, "charge.refunded")
        assert events[0].amount_cents == -1200


class TestInvoices:
    @pytest.mark.asyncio
    async def test_tab_then_invoice(self, billing, user, gateway):
        await billing.create_as_customer(user)
        await billing.tab(user, "Extra seat", 500)
        invoice = await billing.invoice_for(user, "Setup fee", 1000)

        assert isinstance(invoice, Invoice)
        assert invoice.total_amount == 1500
        assert [i.description for i in invoice.items] == ["Extra seat", "Setup fee"]

    @pytest.mark.asyncio
    async def test_invoices_for_non_customer_is_empty(self, billing, user):
        assert await billing.invoices(user) == []

    @pytest.mark.asyncio
    async def test_invoices_listed(self, billing, user):
        await billing.create_as_customer(user)
        invoice = await billing.invoice_for(user, "Setup fee", 1000)
        assert [i.id for i in await billing.invoices(user)] == [invoice.id]

    @pytest.mark.asyncio
    async def test_find_invoice_of_other_customer(self, billing, user, gateway):
        await billing.create_as_customer(user)
        other = await gateway.create_customer("someone@example.com")
        foreign = await gateway.invoice_for(other.id, "Not yours", 999)

        assert await billing.find_invoice(user, foreign.id) is None
        with pytest.raises(NotFoundError):
            await billing.find_invoice_or_fail(user, foreign.id)

    @pytest.mark.asyncio
    async def test_find_missing_invoice(self, billing, user):
        await billing.create_as_customer(user)
        assert await billing.find_invoice(user, "in_missing") is None

    @pytest.mark.asyncio
    async def test_find_own_invoice(self, billing, user):
        await billing.create_as_customer(user)
        invoice = await billing.invoice_for(user, "Setup fee", 1000)
        assert (await billing.find_invoice_or_fail(user, invoice.id)).id == invoice.id
