"""Billing error taxonomy.

Subscription-affecting operations that raise `IncompletePayment` have
already applied their change locally; the exception tells the caller that
collecting the money still needs work (a new card, or a 3-D Secure step on
the payment confirmation page).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Payment:
    """A gateway payment attempt (Stripe PaymentIntent or equivalent)."""

    id: str
    status: str
    amount: int = 0
    currency: str = "usd"
    client_secret: Optional[str] = None
    payment_method_types: list[str] = field(default_factory=lambda: ["card"])
    customer: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_intent(cls, intent: dict) -> "Payment":
        customer = intent.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return cls(
            id=intent["id"],
            status=intent.get("status", ""),
            amount=int(intent.get("amount") or 0),
            currency=intent.get("currency") or "usd",
            client_secret=intent.get("client_secret"),
            payment_method_types=list(intent.get("payment_method_types") or ["card"]),
            customer=customer,
            raw=intent,
        )

    def requires_payment_method(self) -> bool:
        return self.status == "requires_payment_method"

    def requires_action(self) -> bool:
        return self.status in ("requires_action", "requires_source_action")

    def is_succeeded(self) -> bool:
        return self.status == "succeeded"

    def is_cancelled(self) -> bool:
        return self.status == "canceled"

    def validate(self) -> None:
        """Raise the matching IncompletePayment if this attempt did not go through."""
        if self.requires_payment_method():
            raise PaymentFailure(self)
        if self.requires_action():
            raise ActionRequired(self)

    def summary(self) -> dict[str, Any]:
        """Fields the payment confirmation page is allowed to see."""
        return {
            "id": self.id,
            "status": self.status,
            "payment_method_types": self.payment_method_types,
            "client_secret": self.client_secret,
        }


class CashierError(Exception):
    """Base class for billing errors."""


class IncompletePayment(CashierError):
    """Payment did not complete. Carries the payment attempt."""

    default_message = "The payment attempt failed."

    def __init__(self, payment: Payment, message: Optional[str] = None):
        self.payment = payment
        super().__init__(message or self.default_message)

    @property
    def payment_id(self) -> str:
        return self.payment.id

    @property
    def payment_status(self) -> str:
        return self.payment.status


class PaymentFailure(IncompletePayment):
    """The gateway declined the payment method."""

    default_message = "The payment attempt failed because of an invalid payment method."

    @classmethod
    def for_subscription(cls, gateway_id: str, plan: str, payment: Payment) -> "PaymentFailure":
        return cls(
            payment,
            f'The payment attempt for subscription "{gateway_id}" with plan "{plan}" '
            "failed because of an invalid payment method.",
        )


class ActionRequired(IncompletePayment):
    """The gateway needs the customer to authenticate (3-D Secure)."""

    default_message = "The payment attempt needs an extra action before it can be completed."

    @classmethod
    def for_subscription(cls, gateway_id: str, plan: str, payment: Payment) -> "ActionRequired":
        return cls(
            payment,
            f'The payment attempt for subscription "{gateway_id}" with plan "{plan}" '
            "needs an extra action before it can be completed.",
        )


class InvalidStateError(CashierError):
    """A local precondition does not hold (e.g. resume outside the grace period)."""


class NotFoundError(CashierError):
    """Plan, invoice, customer or subscription does not exist."""


class GatewayError(CashierError):
    """The gateway rejected the request for a reason other than payment."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class GatewayUnavailableError(GatewayError):
    """Transport failure or timeout talking to the gateway. Not retried here."""


class WebhookVerificationError(CashierError):
    """Webhook signature mismatch or unparseable payload."""
