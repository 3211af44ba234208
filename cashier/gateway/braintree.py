"""
Braintree gateway
---
Secondary gateway built on the official `braintree` SDK. The SDK is
synchronous (requests under the hood), so every call runs in a worker
thread via asyncio.to_thread; the SDK's own timeout is set from
GATEWAY_TIMEOUT_SECONDS.

Braintree differs from Stripe in a few places the billing core cares about:
  - no subscription quantities (anything other than 1 is refused)
  - no customer-level coupons and no pending invoice items; `tab` charges
    immediately with the description in custom_fields
  - invoices are settled transactions found by a two-year search
  - deferred cancellation caps number_of_billing_cycles at the current
    cycle; resume lifts the cap again with never_expires
  - cancelling during a trial is terminal, so resuming inside that trial
    starts a new subscription (new id) that runs out the remaining trial
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

import braintree
from braintree import exceptions as bt_errors
from braintree.exceptions.braintree_error import BraintreeError

from cashier.errors import (
    GatewayError,
    GatewayUnavailableError,
    InvalidStateError,
    NotFoundError,
    Payment,
    PaymentFailure,
)
from cashier.gateway.base import Gateway, GatewayConfig, GatewayCustomer, GatewaySubscription
from cashier.models.invoice import Invoice, InvoiceItem
from cashier.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

_UNAVAILABLE = (
    bt_errors.ServerError,
    bt_errors.ServiceUnavailableError,
    bt_errors.GatewayTimeoutError,
    bt_errors.RequestTimeoutError,
    bt_errors.TooManyRequestsError,
    bt_errors.UnexpectedError,
)

_SUCCEEDED = {"authorized", "submitted_for_settlement", "settling", "settled", "settlement_pending"}
_DECLINED = {"processor_declined", "gateway_rejected", "failed", "settlement_declined"}


def to_decimal(cents: int) -> str:
    """Minor units to the decimal string Braintree expects: 1050 -> "10.50"."""
    return str((Decimal(int(cents)) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_cents(amount) -> int:
    if amount is None:
        return 0
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _trial_params(trial_end: datetime) -> dict[str, Any]:
    days = max(1, (trial_end - datetime.now(timezone.utc)).days + 1)
    return {"trial_period": True, "trial_duration": days, "trial_duration_unit": "day"}


def _as_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


class BraintreeGateway(Gateway):
    name = "braintree"

    def __init__(self, config: GatewayConfig, client: Optional[braintree.BraintreeGateway] = None):
        super().__init__(config)
        if client is None:
            client = braintree.BraintreeGateway(braintree.Configuration(
                environment=braintree.Environment.parse_environment(config.environment),
                merchant_id=config.merchant_id,
                public_key=config.public_key,
                private_key=config.private_key,
                timeout=config.timeout,
            ))
        self.client = client

    async def _call(self, fn, *args, **kwargs):
        name = getattr(fn, "__qualname__", repr(fn))
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except bt_errors.NotFoundError as exc:
            raise NotFoundError(f"Braintree could not find the resource ({name})") from exc
        except _UNAVAILABLE as exc:
            logger.error("Braintree unavailable during %s: %s", name, exc)
            raise GatewayUnavailableError(f"Braintree unavailable during {name}") from exc
        except BraintreeError as exc:
            raise GatewayError(f"Braintree error during {name}: {exc}") from exc

    @staticmethod
    def _check(result, action: str, amount: int = 0, currency: str = "usd"):
        """Turn an unsuccessful SDK result into the matching error."""
        if result.is_success:
            return result
        transaction = getattr(result, "transaction", None)
        if transaction is not None:
            raise PaymentFailure(Payment(
                id=transaction.id,
                status="requires_payment_method",
                amount=amount,
                currency=currency,
                raw={"processor_response_text": getattr(transaction, "processor_response_text", None)},
            ))
        raise GatewayError(f"{action}: {result.message}")

    # ── Parsing ─────────────────────────────────────────────────────────────

    @staticmethod
    def _default_method(customer):
        methods = list(getattr(customer, "payment_methods", None) or [])
        for method in methods:
            if getattr(method, "default", False):
                return method
        return methods[0] if methods else None

    def _customer(self, customer) -> GatewayCustomer:
        method = self._default_method(customer)
        paypal = isinstance(method, braintree.PayPalAccount)
        return GatewayCustomer(
            id=str(customer.id),
            email=getattr(customer, "email", None),
            card_brand=None if paypal or method is None else getattr(method, "card_type", None),
            card_last_four=None if paypal or method is None else getattr(method, "last_4", None),
            paypal_email=getattr(method, "email", None) if paypal else None,
            raw={"id": str(customer.id), "default_token": getattr(method, "token", None)},
        )

    @staticmethod
    def _subscription(sub) -> GatewaySubscription:
        try:
            status = SubscriptionStatus.from_gateway(sub.status).value
        except ValueError as exc:
            raise GatewayError(str(exc)) from exc

        trial_end = _as_datetime(sub.first_billing_date) if getattr(sub, "trial_period", False) else None
        period_end = _as_datetime(
            getattr(sub, "billing_period_end_date", None)
            or getattr(sub, "paid_through_date", None)
            or getattr(sub, "next_billing_date", None)
        )
        capped = getattr(sub, "number_of_billing_cycles", None) is not None
        discounts = list(getattr(sub, "discounts", None) or [])
        return GatewaySubscription(
            id=sub.id,
            status=status,
            plan=sub.plan_id,
            quantity=1,
            trial_end=trial_end,
            current_period_end=period_end,
            cancel_at_period_end=capped and not getattr(sub, "never_expires", True),
            coupon_id=discounts[0].id if discounts else None,
            raw={"id": sub.id, "status": sub.status, "discount_ids": [d.id for d in discounts]},
        )

    @staticmethod
    def _invoice(transaction) -> Invoice:
        currency = (getattr(transaction, "currency_iso_code", None) or "usd").lower()
        total = to_cents(transaction.amount)
        discounts = list(getattr(transaction, "discounts", None) or [])
        discount_cents = sum(to_cents(d.amount) * int(getattr(d, "quantity", 1) or 1) for d in discounts)
        details = getattr(transaction, "subscription_details", None)
        custom = getattr(transaction, "custom_fields", None) or {}
        plan_id = getattr(transaction, "plan_id", None)
        item = InvoiceItem(
            id=transaction.id,
            description=custom.get("description") if isinstance(custom, dict) else None,
            amount=total + discount_cents,
            currency=currency,
            plan_id=plan_id,
            period_start=_as_datetime(getattr(details, "billing_period_start_date", None)),
            period_end=_as_datetime(getattr(details, "billing_period_end_date", None)),
        )
        customer = getattr(transaction, "customer_details", None)
        return Invoice(
            id=transaction.id,
            customer=str(customer.id) if customer is not None and customer.id is not None else None,
            currency=currency,
            total_amount=total,
            subtotal_amount=total + discount_cents,
            amount_off_cents=discount_cents or None,
            coupon_id=discounts[0].id if discounts else None,
            charge_id=transaction.id,
            date=_as_datetime(getattr(transaction, "created_at", None)),
            settled=transaction.status == braintree.Transaction.Status.Settled,
            items=[item],
        )

    @staticmethod
    def _payment(transaction, customer_id: Optional[str] = None) -> Payment:
        raw_status = (transaction.status or "").lower()
        if raw_status in _SUCCEEDED:
            status = "succeeded"
        elif raw_status in _DECLINED:
            status = "requires_payment_method"
        elif raw_status == "voided":
            status = "canceled"
        else:
            status = raw_status
        customer = getattr(transaction, "customer_details", None)
        return Payment(
            id=transaction.id,
            status=status,
            amount=to_cents(transaction.amount),
            currency=(getattr(transaction, "currency_iso_code", None) or "usd").lower(),
            payment_method_types=["card"],
            customer=customer_id or (str(customer.id) if customer is not None else None),
            raw={"id": transaction.id, "status": transaction.status},
        )

    # ── Plans ───────────────────────────────────────────────────────────────

    async def find_plan(self, plan_id: str):
        plans = await self._call(self.client.plan.all)
        for plan in plans:
            if plan.id == plan_id:
                return plan
        raise NotFoundError(f"Unable to find Braintree plan with ID [{plan_id}].")

    # ── Customers ───────────────────────────────────────────────────────────

    async def create_customer(self, email, name=None, payment_method=None, options=None):
        parts = (name or "").split(" ", 1)
        params: dict[str, Any] = {
            "first_name": parts[0] or None,
            "last_name": parts[1] if len(parts) > 1 else None,
            "email": email,
        }
        if payment_method:
            params["payment_method_nonce"] = payment_method
            params["credit_card"] = {"options": {"verify_card": True}}
        params.update(options or {})
        result = self._check(
            await self._call(self.client.customer.create, params),
            "Unable to create Braintree customer",
        )
        logger.info("Created Braintree customer %s", result.customer.id)
        return self._customer(result.customer)

    async def get_customer(self, customer_id):
        customer = await self._call(self.client.customer.find, customer_id)
        return self._customer(customer)

    async def update_default_payment_method(self, customer_id, payment_method):
        result = self._check(
            await self._call(self.client.payment_method.create, {
                "customer_id": customer_id,
                "payment_method_nonce": payment_method,
                "options": {"make_default": True, "verify_card": True},
            }),
            "Braintree was unable to create a payment method",
        )
        token = result.payment_method.token

        # Running subscriptions stay on the old token unless moved explicitly
        customer = await self._call(self.client.customer.find, customer_id)
        for method in getattr(customer, "payment_methods", None) or []:
            if method.token == token:
                continue
            for sub in getattr(method, "subscriptions", None) or []:
                if sub.status in ("Active", "Pending", "Past Due"):
                    await self._call(self.client.subscription.update, sub.id, {"payment_method_token": token})
        return self._customer(customer)

    async def apply_customer_coupon(self, customer_id, coupon):
        raise GatewayError("Braintree does not support customer-level coupons; apply it to a subscription")

    # ── Subscriptions ───────────────────────────────────────────────────────

    async def create_subscription(
        self, customer_id, plan, *, quantity=1, trial_end=None, coupon=None,
        billing_cycle_anchor=None, metadata=None, skip_trial=False,
    ):
        if quantity != 1:
            raise GatewayError("Braintree subscriptions do not support quantities")
        await self.find_plan(plan)
        customer = await self.get_customer(customer_id)
        token = customer.raw.get("default_token")
        if not token:
            raise GatewayError(f"Braintree customer {customer_id} has no payment method")

        params: dict[str, Any] = {"payment_method_token": token, "plan_id": plan}
        if skip_trial:
            params["trial_period"] = False
        elif trial_end is not None:
            params.update(_trial_params(trial_end))
        if coupon:
            params["discounts"] = {"add": [{"inherited_from_id": coupon}]}
        if billing_cycle_anchor is not None:
            params["first_billing_date"] = billing_cycle_anchor.date()
        if metadata:
            logger.debug("Braintree has no subscription metadata; dropping %s", sorted(metadata))

        result = self._check(
            await self._call(self.client.subscription.create, params),
            "Braintree failed to create subscription",
        )
        logger.info("Created Braintree subscription %s (plan=%s)", result.subscription.id, plan)
        return self._subscription(result.subscription)

    async def get_subscription(self, subscription_id):
        return self._subscription(await self._call(self.client.subscription.find, subscription_id))

    async def _update(self, subscription_id: str, params: dict[str, Any]) -> GatewaySubscription:
        result = self._check(
            await self._call(self.client.subscription.update, subscription_id, params),
            f"Braintree failed to update subscription {subscription_id}",
        )
        return self._subscription(result.subscription)

    async def update_subscription(
        self, subscription_id, *, plan=None, quantity=None, trial_end=None,
        end_trial_now=False, coupon=None, prorate=True, invoice_now=False,
    ):
        if quantity is not None and quantity != 1:
            raise GatewayError("Braintree subscriptions do not support quantities")
        if end_trial_now:
            raise GatewayError("Braintree cannot end a subscription trial early")

        params: dict[str, Any] = {}
        if plan is not None:
            found = await self.find_plan(plan)
            params.update({
                "plan_id": found.id,
                "price": str(found.price),
                "options": {
                    "prorate_charges": prorate,
                    "revert_subscription_on_proration_failure": True,
                },
            })
        if coupon:
            params["discounts"] = {"add": [{"inherited_from_id": coupon}]}
        if not params:
            return await self.get_subscription(subscription_id)
        return await self._update(subscription_id, params)

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        if not at_period_end:
            result = self._check(
                await self._call(self.client.subscription.cancel, subscription_id),
                f"Braintree failed to cancel subscription {subscription_id}",
            )
            return self._subscription(result.subscription)

        sub = await self._call(self.client.subscription.find, subscription_id)
        trial_end = _as_datetime(sub.first_billing_date) if getattr(sub, "trial_period", False) else None
        if trial_end is not None and trial_end > datetime.now(timezone.utc):
            # A trialing subscription has no paid cycle to run out
            result = self._check(
                await self._call(self.client.subscription.cancel, subscription_id),
                f"Braintree failed to cancel subscription {subscription_id}",
            )
            cancelled = self._subscription(result.subscription)
            cancelled.current_period_end = trial_end
            return cancelled

        return await self._update(subscription_id, {
            "number_of_billing_cycles": sub.current_billing_cycle,
        })

    async def resume_subscription(self, subscription_id, trial_end=None):
        sub = await self._call(self.client.subscription.find, subscription_id)
        if sub.status != braintree.Subscription.Status.Canceled:
            return await self._update(subscription_id, {
                "never_expires": True,
                "number_of_billing_cycles": None,
            })

        if trial_end is None or trial_end <= datetime.now(timezone.utc):
            raise InvalidStateError(f"Braintree subscription {subscription_id} is cancelled and cannot be resumed")
        params: dict[str, Any] = {
            "payment_method_token": sub.payment_method_token,
            "plan_id": sub.plan_id,
            **_trial_params(trial_end),
        }
        discounts = [d.id for d in getattr(sub, "discounts", None) or []]
        if discounts:
            params["discounts"] = {"add": [{"inherited_from_id": d} for d in discounts]}
        result = self._check(
            await self._call(self.client.subscription.create, params),
            f"Braintree failed to restart subscription {subscription_id}",
        )
        logger.info(
            "Braintree subscription %s was cancelled in trial; resumed as %s",
            subscription_id, result.subscription.id,
        )
        return self._subscription(result.subscription)

    async def apply_subscription_coupon(self, subscription_id, coupon):
        return await self._update(subscription_id, {
            "discounts": {"add": [{"inherited_from_id": coupon, "never_expires": True}]},
        })

    async def remove_subscription_discounts(self, subscription_id):
        sub = await self._call(self.client.subscription.find, subscription_id)
        ids = [d.id for d in getattr(sub, "discounts", None) or []]
        if ids:
            await self._update(subscription_id, {"discounts": {"remove": ids}})

    # ── Payments & invoices ─────────────────────────────────────────────────

    async def charge(
        self, customer_id, amount, *, currency=None, payment_method=None,
        description=None, options=None,
    ):
        if payment_method is None:
            customer = await self.get_customer(customer_id)
            payment_method = customer.raw.get("default_token")
        total = round(amount * (1 + self.config.tax_percentage / 100))
        currency = currency or self.config.currency

        params: dict[str, Any] = {
            "amount": to_decimal(total),
            "payment_method_token": payment_method,
            "options": {"submit_for_settlement": True},
        }
        if description:
            params["custom_fields"] = {"description": description}
        params.update(options or {})

        result = self._check(
            await self._call(self.client.transaction.sale, params),
            "Braintree was unable to perform a charge",
            amount=total,
            currency=currency,
        )
        payment = self._payment(result.transaction, customer_id)
        logger.info("Braintree charge %s for %s (%s)", payment.id, customer_id, params["amount"])
        return payment

    async def refund(self, charge_id, amount=None):
        args = (charge_id,) if amount is None else (charge_id, to_decimal(amount))
        result = self._check(
            await self._call(self.client.transaction.refund, *args),
            f"Braintree was unable to refund {charge_id}",
        )
        transaction = result.transaction
        return {
            "id": transaction.id,
            "charge": charge_id,
            "amount": to_cents(transaction.amount),
            "status": transaction.status,
        }

    async def tab(self, customer_id, description, amount, currency=None):
        payment = await self.charge(customer_id, amount, currency=currency, description=description)
        return {"id": payment.id, "amount": payment.amount, "description": description, "status": payment.status}

    async def invoice_for(self, customer_id, description, amount, currency=None):
        payment = await self.charge(customer_id, amount, currency=currency, description=description)
        return await self.get_invoice(payment.id)

    async def invoice_customer(self, customer_id):
        return None

    async def list_invoices(self, customer_id, include_pending=False):
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        transactions = await self._call(
            self.client.transaction.search,
            braintree.TransactionSearch.customer_id == customer_id,
            braintree.TransactionSearch.created_at.between(
                today - timedelta(days=730), today + timedelta(days=1)
            ),
        )
        invoices = []
        for transaction in transactions or []:
            if include_pending or transaction.status == braintree.Transaction.Status.Settled:
                invoices.append(self._invoice(transaction))
        return invoices

    async def get_invoice(self, invoice_id):
        return self._invoice(await self._call(self.client.transaction.find, invoice_id))

    async def get_payment(self, payment_id):
        return self._payment(await self._call(self.client.transaction.find, payment_id))
