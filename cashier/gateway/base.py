"""
Payment gateway contract
---
Everything the billing core needs from a payment processor. Concrete
gateways (Stripe over HTTPS, Braintree via its SDK) translate their API
into the small normalized types below and raise the errors from
`cashier.errors`:

    transport failure / timeout      -> GatewayUnavailableError
    unknown customer/plan/invoice    -> NotFoundError
    declined payment                 -> PaymentFailure
    3-D Secure needed                -> ActionRequired
    anything else the gateway refuses -> GatewayError

Credentials travel in a `GatewayConfig` handed to the constructor; there is
no module-level API key.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from cashier.errors import Payment
from cashier.models.invoice import Invoice


@dataclass(frozen=True)
class GatewayConfig:
    name: str = "stripe"
    secret_key: str = ""
    publishable_key: str = ""
    webhook_secret: str = ""
    api_base: str = "https://api.stripe.com"
    api_version: str = "2019-03-14"
    webhook_tolerance: int = 300
    timeout: float = 15.0
    currency: str = "usd"
    tax_percentage: float = 0.0
    # Braintree
    environment: str = "sandbox"
    merchant_id: str = ""
    public_key: str = ""
    private_key: str = ""

    @classmethod
    def from_settings(cls, settings) -> "GatewayConfig":
        return cls(
            name=settings.BILLING_GATEWAY,
            secret_key=settings.STRIPE_SECRET_KEY,
            publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_base=settings.STRIPE_API_BASE,
            api_version=settings.STRIPE_API_VERSION,
            webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            currency=settings.CASHIER_CURRENCY,
            tax_percentage=settings.CASHIER_TAX_PERCENTAGE,
            environment=settings.BRAINTREE_ENVIRONMENT,
            merchant_id=settings.BRAINTREE_MERCHANT_ID,
            public_key=settings.BRAINTREE_PUBLIC_KEY,
            private_key=settings.BRAINTREE_PRIVATE_KEY,
        )


@dataclass
class GatewayCustomer:
    id: str
    email: Optional[str] = None
    card_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    paypal_email: Optional[str] = None
    coupon_id: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class GatewaySubscription:
    id: str
    status: str
    plan: str
    quantity: int = 1
    customer: Optional[str] = None
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    coupon_id: Optional[str] = None
    latest_payment: Optional[Payment] = None
    raw: dict = field(default_factory=dict, repr=False)


class Gateway(abc.ABC):
    """Async payment gateway client."""

    name: str = "gateway"

    def __init__(self, config: GatewayConfig):
        self.config = config

    # ── Customers ──────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        payment_method: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> GatewayCustomer: ...

    @abc.abstractmethod
    async def get_customer(self, customer_id: str) -> GatewayCustomer: ...

    @abc.abstractmethod
    async def update_default_payment_method(
        self, customer_id: str, payment_method: str
    ) -> GatewayCustomer: ...

    @abc.abstractmethod
    async def apply_customer_coupon(self, customer_id: str, coupon: str) -> GatewayCustomer: ...

    # ── Subscriptions ──────────────────────────────────────────────────────

    @abc.abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        plan: str,
        *,
        quantity: int = 1,
        trial_end: Optional[datetime] = None,
        coupon: Optional[str] = None,
        billing_cycle_anchor: Optional[datetime] = None,
        metadata: Optional[dict[str, str]] = None,
        skip_trial: bool = False,
    ) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def get_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        *,
        plan: Optional[str] = None,
        quantity: Optional[int] = None,
        trial_end: Optional[datetime] = None,
        end_trial_now: bool = False,
        coupon: Optional[str] = None,
        prorate: bool = True,
        invoice_now: bool = False,
    ) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def resume_subscription(
        self, subscription_id: str, trial_end: Optional[datetime] = None
    ) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def apply_subscription_coupon(
        self, subscription_id: str, coupon: str
    ) -> GatewaySubscription: ...

    @abc.abstractmethod
    async def remove_subscription_discounts(self, subscription_id: str) -> None: ...

    # ── Payments & invoices ────────────────────────────────────────────────

    @abc.abstractmethod
    async def charge(
        self,
        customer_id: str,
        amount: int,
        *,
        currency: Optional[str] = None,
        payment_method: Optional[str] = None,
        description: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Payment: ...

    @abc.abstractmethod
    async def refund(self, charge_id: str, amount: Optional[int] = None) -> dict: ...

    @abc.abstractmethod
    async def tab(
        self, customer_id: str, description: str, amount: int, currency: Optional[str] = None
    ) -> dict: ...

    @abc.abstractmethod
    async def invoice_for(
        self, customer_id: str, description: str, amount: int, currency: Optional[str] = None
    ) -> Invoice: ...

    @abc.abstractmethod
    async def invoice_customer(self, customer_id: str) -> Optional[Invoice]: ...

    @abc.abstractmethod
    async def list_invoices(self, customer_id: str, include_pending: bool = False) -> list[Invoice]: ...

    @abc.abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice: ...

    @abc.abstractmethod
    async def get_payment(self, payment_id: str) -> Payment: ...

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""


def build_gateway(config: GatewayConfig) -> Gateway:
    """Construct the gateway named in the config."""
    if config.name == "braintree":
        from cashier.gateway.braintree import BraintreeGateway
        return BraintreeGateway(config)
    if config.name == "stripe":
        from cashier.gateway.stripe import StripeGateway
        return StripeGateway(config)
    raise ValueError(f"Unknown billing gateway: {config.name!r}")
