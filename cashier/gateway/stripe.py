"""
Stripe gateway
---
Talks to the Stripe REST API directly with httpx (form-encoded bodies,
bearer secret key, pinned Stripe-Version). Every call opens a short-lived
client with the configured timeout, so a hung Stripe edge surfaces as
GatewayUnavailableError instead of a stuck worker.

Subscriptions are created and updated with payment_behavior=allow_incomplete
and the latest invoice's PaymentIntent expanded, so a declined card or a
3-D Secure challenge comes back as data (GatewaySubscription.latest_payment)
rather than an HTTP error.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from cashier.errors import (
    GatewayError,
    GatewayUnavailableError,
    NotFoundError,
    Payment,
)
from cashier.gateway.base import Gateway, GatewayConfig, GatewayCustomer, GatewaySubscription
from cashier.models.invoice import Invoice
from cashier.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

_SUBSCRIPTION_EXPAND = ["latest_invoice.payment_intent"]
_CUSTOMER_EXPAND = ["default_source", "invoice_settings.default_payment_method"]


def _flatten(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested params into Stripe's bracket notation.

    {"items": [{"plan": "gold"}], "expand": ["a"]}
        -> [("items[0][plan]", "gold"), ("expand[]", "a")]
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(_flatten(item, f"{name}[{i}]"))
                else:
                    pairs.append((f"{name}[]", _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return str(_to_ts(value))
    return str(value)


def _to_ts(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_ts(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeGateway(Gateway):
    name = "stripe"

    def __init__(self, config: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport

    # ── HTTP ────────────────────────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Stripe-Version": self.config.api_version,
        }

    async def _request(self, method: str, path: str, params: Optional[dict[str, Any]] = None) -> dict:
        pairs = _flatten(params or {})
        headers = self._headers()
        try:
            async with httpx.AsyncClient(
                base_url=self.config.api_base,
                timeout=self.config.timeout,
                transport=self._transport,
            ) as client:
                if method in ("GET", "DELETE"):
                    resp = await client.request(method, path, params=pairs, headers=headers)
                else:
                    headers["Content-Type"] = "application/x-www-form-urlencoded"
                    resp = await client.request(method, path, content=urlencode(pairs), headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("Stripe request timed out: %s %s", method, path)
            raise GatewayUnavailableError(f"Stripe timed out on {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.error("Stripe unreachable: %s %s (%s)", method, path, exc)
            raise GatewayUnavailableError(f"Stripe unreachable on {method} {path}") from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            self._raise_for_error(resp.status_code, body, method, path)
        return body

    def _raise_for_error(self, status_code: int, body: dict, method: str, path: str) -> None:
        error = body.get("error") or {}
        message = error.get("message") or f"Stripe returned HTTP {status_code}"
        code = error.get("code")

        if status_code == 404 or code == "resource_missing":
            raise NotFoundError(message)

        # Declines and 3DS challenges carry the PaymentIntent
        intent = error.get("payment_intent")
        if isinstance(intent, dict) and intent.get("id"):
            Payment.from_intent(intent).validate()

        if status_code == 429 or status_code >= 500:
            logger.error("Stripe error %s on %s %s: %s", status_code, method, path, message)
            raise GatewayUnavailableError(message, status_code=status_code, code=code)

        logger.warning("Stripe rejected %s %s (%s): %s", method, path, code or status_code, message)
        raise GatewayError(message, status_code=status_code, code=code)

    # ── Parsing ─────────────────────────────────────────────────────────────

    @staticmethod
    def parse_customer(data: dict) -> GatewayCustomer:
        brand = last_four = None
        default_pm = (data.get("invoice_settings") or {}).get("default_payment_method")
        source = data.get("default_source")
        if isinstance(default_pm, dict) and default_pm.get("card"):
            brand = default_pm["card"].get("brand")
            last_four = default_pm["card"].get("last4")
        elif isinstance(source, dict):
            brand = source.get("brand")
            last_four = source.get("last4")
        coupon = ((data.get("discount") or {}).get("coupon") or {}).get("id")
        return GatewayCustomer(
            id=data["id"],
            email=data.get("email"),
            card_brand=brand,
            card_last_four=last_four,
            coupon_id=coupon,
            raw=data,
        )

    @staticmethod
    def parse_subscription(data: dict) -> GatewaySubscription:
        items = (data.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        plan = data.get("plan") or first.get("plan") or first.get("price") or {}
        quantity = data.get("quantity") or first.get("quantity") or 1

        try:
            status = SubscriptionStatus.from_gateway(data.get("status")).value
        except ValueError as exc:
            raise GatewayError(str(exc)) from exc

        payment = None
        latest = data.get("latest_invoice")
        if isinstance(latest, dict) and isinstance(latest.get("payment_intent"), dict):
            payment = Payment.from_intent(latest["payment_intent"])

        return GatewaySubscription(
            id=data["id"],
            status=status,
            plan=plan.get("id", ""),
            quantity=int(quantity),
            customer=data.get("customer"),
            trial_end=_from_ts(data.get("trial_end")),
            current_period_end=_from_ts(data.get("current_period_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            coupon_id=((data.get("discount") or {}).get("coupon") or {}).get("id"),
            latest_payment=payment,
            raw=data,
        )

    # ── Customers ───────────────────────────────────────────────────────────

    async def create_customer(self, email, name=None, payment_method=None, options=None):
        params: dict[str, Any] = {"email": email, "name": name, "expand": _CUSTOMER_EXPAND}
        if payment_method and payment_method.startswith("pm_"):
            params["payment_method"] = payment_method
            params["invoice_settings"] = {"default_payment_method": payment_method}
        elif payment_method:
            params["source"] = payment_method
        params.update(options or {})
        data = await self._request("POST", "/v1/customers", params)
        logger.info("Created Stripe customer %s", data.get("id"))
        return self.parse_customer(data)

    async def get_customer(self, customer_id):
        data = await self._request("GET", f"/v1/customers/{customer_id}", {"expand": _CUSTOMER_EXPAND})
        if data.get("deleted"):
            raise NotFoundError(f"Stripe customer {customer_id} was deleted")
        return self.parse_customer(data)

    async def update_default_payment_method(self, customer_id, payment_method):
        if payment_method.startswith("pm_"):
            await self._request("POST", f"/v1/payment_methods/{payment_method}/attach", {"customer": customer_id})
            params = {"invoice_settings": {"default_payment_method": payment_method}}
        else:
            params = {"source": payment_method}
        params["expand"] = _CUSTOMER_EXPAND
        data = await self._request("POST", f"/v1/customers/{customer_id}", params)
        return self.parse_customer(data)

    async def apply_customer_coupon(self, customer_id, coupon):
        data = await self._request(
            "POST", f"/v1/customers/{customer_id}", {"coupon": coupon, "expand": _CUSTOMER_EXPAND}
        )
        return self.parse_customer(data)

    # ── Subscriptions ───────────────────────────────────────────────────────

    async def create_subscription(
        self, customer_id, plan, *, quantity=1, trial_end=None, coupon=None,
        billing_cycle_anchor=None, metadata=None, skip_trial=False,
    ):
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"plan": plan, "quantity": quantity}],
            "payment_behavior": "allow_incomplete",
            "expand": _SUBSCRIPTION_EXPAND,
            "trial_end": "now" if skip_trial else trial_end,
            "coupon": coupon,
            "billing_cycle_anchor": billing_cycle_anchor,
            "metadata": metadata,
        }
        data = await self._request("POST", "/v1/subscriptions", params)
        logger.info("Created Stripe subscription %s (plan=%s status=%s)", data.get("id"), plan, data.get("status"))
        return self.parse_subscription(data)

    async def get_subscription(self, subscription_id):
        data = await self._request(
            "GET", f"/v1/subscriptions/{subscription_id}", {"expand": _SUBSCRIPTION_EXPAND}
        )
        return self.parse_subscription(data)

    async def update_subscription(
        self, subscription_id, *, plan=None, quantity=None, trial_end=None,
        end_trial_now=False, coupon=None, prorate=True, invoice_now=False,
    ):
        params: dict[str, Any] = {
            "payment_behavior": "allow_incomplete",
            "expand": _SUBSCRIPTION_EXPAND,
            "coupon": coupon,
        }
        if plan is not None or quantity is not None:
            current = await self.get_subscription(subscription_id)
            items = (current.raw.get("items") or {}).get("data") or []
            item: dict[str, Any] = {"id": items[0]["id"]} if items else {}
            if plan is not None:
                item["plan"] = plan
            if quantity is not None:
                item["quantity"] = quantity
            params["items"] = [item]
        if end_trial_now:
            params["trial_end"] = "now"
        elif trial_end is not None:
            params["trial_end"] = trial_end
        if not prorate:
            params["proration_behavior"] = "none"
        elif invoice_now:
            params["proration_behavior"] = "always_invoice"
        else:
            params["proration_behavior"] = "create_prorations"
        data = await self._request("POST", f"/v1/subscriptions/{subscription_id}", params)
        return self.parse_subscription(data)

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        if at_period_end:
            data = await self._request(
                "POST", f"/v1/subscriptions/{subscription_id}",
                {"cancel_at_period_end": True, "expand": _SUBSCRIPTION_EXPAND},
            )
        else:
            data = await self._request("DELETE", f"/v1/subscriptions/{subscription_id}")
        return self.parse_subscription(data)

    async def resume_subscription(self, subscription_id, trial_end=None):
        params: dict[str, Any] = {
            "cancel_at_period_end": False,
            "proration_behavior": "none",
            "expand": _SUBSCRIPTION_EXPAND,
            "trial_end": trial_end,
        }
        data = await self._request("POST", f"/v1/subscriptions/{subscription_id}", params)
        return self.parse_subscription(data)

    async def apply_subscription_coupon(self, subscription_id, coupon):
        data = await self._request(
            "POST", f"/v1/subscriptions/{subscription_id}",
            {"coupon": coupon, "expand": _SUBSCRIPTION_EXPAND},
        )
        return self.parse_subscription(data)

    async def remove_subscription_discounts(self, subscription_id):
        try:
            await self._request("DELETE", f"/v1/subscriptions/{subscription_id}/discount")
        except NotFoundError:
            logger.debug("Subscription %s had no discount to remove", subscription_id)

    # ── Payments & invoices ─────────────────────────────────────────────────

    async def _default_payment_method(self, customer_id: str) -> Optional[str]:
        customer = await self.get_customer(customer_id)
        default_pm = (customer.raw.get("invoice_settings") or {}).get("default_payment_method")
        if isinstance(default_pm, dict):
            return default_pm.get("id")
        source = customer.raw.get("default_source")
        if isinstance(source, dict):
            return source.get("id")
        return default_pm or source

    async def charge(
        self, customer_id, amount, *, currency=None, payment_method=None,
        description=None, options=None,
    ):
        payment_method = payment_method or await self._default_payment_method(customer_id)
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency or self.config.currency,
            "customer": customer_id,
            "payment_method": payment_method,
            "description": description,
            "confirmation_method": "automatic",
            "confirm": True,
        }
        params.update(options or {})
        data = await self._request("POST", "/v1/payment_intents", params)
        payment = Payment.from_intent(data)
        payment.validate()
        return payment

    async def refund(self, charge_id, amount=None):
        key = "charge" if charge_id.startswith(("ch_", "py_")) else "payment_intent"
        return await self._request("POST", "/v1/refunds", {key: charge_id, "amount": amount})

    async def tab(self, customer_id, description, amount, currency=None):
        return await self._request("POST", "/v1/invoiceitems", {
            "customer": customer_id,
            "amount": amount,
            "currency": currency or self.config.currency,
            "description": description,
        })

    async def invoice_for(self, customer_id, description, amount, currency=None):
        await self.tab(customer_id, description, amount, currency)
        invoice = await self.invoice_customer(customer_id)
        if invoice is None:
            raise GatewayError(f"Nothing to invoice for customer {customer_id}")
        return invoice

    async def invoice_customer(self, customer_id):
        try:
            draft = await self._request("POST", "/v1/invoices", {"customer": customer_id})
        except GatewayError as exc:
            if exc.code == "invoice_no_customer_line_items":
                return None
            raise
        data = await self._request(
            "POST", f"/v1/invoices/{draft['id']}/pay", {"expand": ["payment_intent"]}
        )
        intent = data.get("payment_intent")
        if isinstance(intent, dict):
            Payment.from_intent(intent).validate()
        return Invoice.from_stripe(data)

    async def list_invoices(self, customer_id, include_pending=False):
        data = await self._request("GET", "/v1/invoices", {"customer": customer_id, "limit": 100})
        invoices = [Invoice.from_stripe(item) for item in data.get("data") or []]
        if include_pending:
            return invoices
        return [inv for inv in invoices if inv.settled]

    async def get_invoice(self, invoice_id):
        data = await self._request("GET", f"/v1/invoices/{invoice_id}")
        return Invoice.from_stripe(data)

    async def get_payment(self, payment_id):
        data = await self._request("GET", f"/v1/payment_intents/{payment_id}")
        return Payment.from_intent(data)
