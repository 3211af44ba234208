"""One-off billing on a billable user: customer setup, charges, invoices, refunds."""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cashier.billable import has_gateway_id
from cashier.db.repository import log_payment_event
from cashier.db.user_tables import UserRow
from cashier.errors import InvalidStateError, NotFoundError, Payment
from cashier.gateway.base import Gateway
from cashier.models.invoice import Invoice
from cashier.services.subscriptions import apply_customer

logger = logging.getLogger(__name__)


class BillingService:
    """Gateway operations that are not tied to a single subscription."""

    def __init__(self, gateway: Gateway, session: AsyncSession):
        self.gateway = gateway
        self.session = session

    def _customer_id(self, billable: UserRow) -> str:
        if not has_gateway_id(billable):
            raise InvalidStateError(f"User {billable.id} is not a {self.gateway.name} customer yet.")
        return billable.gateway_customer_id

    async def create_as_customer(
        self,
        billable: UserRow,
        payment_method: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> UserRow:
        if has_gateway_id(billable):
            raise InvalidStateError(
                f"User {billable.id} is already a {self.gateway.name} customer ({billable.gateway_customer_id})."
            )
        customer = await self.gateway.create_customer(
            billable.email, billable.billing_name(), payment_method, options
        )
        apply_customer(billable, customer)
        await self.session.commit()
        logger.info("User %s is now customer %s", billable.id, customer.id)
        return billable

    async def update_card(self, billable: UserRow, payment_method: str) -> UserRow:
        customer = await self.gateway.update_default_payment_method(self._customer_id(billable), payment_method)
        apply_customer(billable, customer)
        await self.session.commit()
        return billable

    async def apply_coupon(self, billable: UserRow, coupon: str) -> None:
        await self.gateway.apply_customer_coupon(self._customer_id(billable), coupon)

    async def charge(
        self,
        billable: UserRow,
        amount: int,
        *,
        payment_method: Optional[str] = None,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """Charge `amount` minor units once.

        Raises PaymentFailure / ActionRequired when the payment does not complete.
        """
        if amount <= 0:
            raise ValueError("Charge amount must be positive")
        payment = await self.gateway.charge(
            self._customer_id(billable),
            amount,
            currency=currency,
            payment_method=payment_method,
            description=description,
            options=options,
        )
        log_payment_event(
            self.session, "charge.succeeded", self.gateway.name,
            user_id=billable.id,
            gateway_event_id=payment.id,
            payload={"description": description},
            amount_cents=payment.amount,
            currency=payment.currency,
        )
        await self.session.commit()
        return payment

    async def tab(
        self, billable: UserRow, description: str, amount: int, currency: Optional[str] = None
    ) -> dict:
        """Add a pending item to the customer's next invoice."""
        return await self.gateway.tab(self._customer_id(billable), description, amount, currency)

    async def invoice_for(
        self, billable: UserRow, description: str, amount: int, currency: Optional[str] = None
    ) -> Invoice:
        invoice = await self.gateway.invoice_for(self._customer_id(billable), description, amount, currency)
        log_payment_event(
            self.session, "invoice.created", self.gateway.name,
            user_id=billable.id,
            gateway_event_id=invoice.id,
            payload={"description": description},
            amount_cents=invoice.total_amount,
            currency=invoice.currency,
        )
        await self.session.commit()
        return invoice

    async def refund(self, charge_id: str, amount: Optional[int] = None, user_id: Optional[str] = None) -> dict:
        refund = await self.gateway.refund(charge_id, amount)
        refunded = refund.get("amount") or amount or 0
        log_payment_event(
            self.session, "charge.refunded", self.gateway.name,
            user_id=user_id,
            gateway_event_id=refund.get("id"),
            payload={"charge_id": charge_id},
            amount_cents=-refunded,
        )
        await self.session.commit()
        return refund

    async def invoices(self, billable: UserRow, include_pending: bool = False) -> list[Invoice]:
        if not has_gateway_id(billable):
            return []
        return await self.gateway.list_invoices(billable.gateway_customer_id, include_pending)

    async def find_invoice(self, billable: UserRow, invoice_id: str) -> Optional[Invoice]:
        """The invoice, or None when it is missing or belongs to another customer."""
        if not has_gateway_id(billable):
            return None
        try:
            invoice = await self.gateway.get_invoice(invoice_id)
        except NotFoundError:
            return None
        if invoice.customer != billable.gateway_customer_id:
            logger.warning("User %s asked for invoice %s of another customer", billable.id, invoice_id)
            return None
        return invoice

    async def find_invoice_or_fail(self, billable: UserRow, invoice_id: str) -> Invoice:
        invoice = await self.find_invoice(billable, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice
