"""Invoice projections — read-only views over gateway invoices/transactions.

Nothing here is persisted. Amounts are integer minor units (cents).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£", "cad": "$", "aud": "$"}


def format_amount(cents: int, currency: str = "usd") -> str:
    """Format minor units for display: 1000, "usd" -> "$10.00"."""
    symbol = CURRENCY_SYMBOLS.get(currency.lower(), "")
    sign = "-" if cents < 0 else ""
    value = f"{abs(cents) / 100:,.2f}"
    if symbol:
        return f"{sign}{symbol}{value}"
    return f"{sign}{value} {currency.upper()}"


def _ts(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class InvoiceItem(BaseModel):
    id: Optional[str] = None
    description: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    quantity: Optional[int] = None
    plan_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def total(self) -> str:
        return format_amount(self.amount, self.currency)

    def is_subscription(self) -> bool:
        return self.plan_id is not None


class Invoice(BaseModel):
    id: str
    customer: Optional[str] = None
    currency: str = "usd"
    total_amount: int = 0
    subtotal_amount: int = 0
    starting_balance: int = 0
    amount_off_cents: Optional[int] = None
    percent_off: Optional[float] = None
    coupon_id: Optional[str] = None
    charge_id: Optional[str] = None
    date: Optional[datetime] = None
    settled: bool = False
    items: list[InvoiceItem] = []

    def total(self) -> str:
        return format_amount(self.total_amount, self.currency)

    def subtotal(self) -> str:
        return format_amount(self.subtotal_amount, self.currency)

    def has_discount(self) -> bool:
        return self.coupon_id is not None or bool(self.amount_off_cents)

    def discount_is_percentage(self) -> bool:
        return self.percent_off is not None

    def amount_off(self) -> str:
        """Discount as money; percentage discounts are resolved against the subtotal."""
        if self.percent_off is not None:
            cents = round(self.subtotal_amount * self.percent_off / 100)
        else:
            cents = self.amount_off_cents or 0
        return format_amount(cents, self.currency)

    def has_starting_balance(self) -> bool:
        return self.starting_balance < 0

    def coupon(self) -> Optional[str]:
        return self.coupon_id

    def subscriptions(self) -> list[InvoiceItem]:
        return [i for i in self.items if i.is_subscription()]

    @classmethod
    def from_stripe(cls, data: dict) -> "Invoice":
        """Project a Stripe invoice object."""
        currency = data.get("currency") or "usd"
        discount = data.get("discount") or {}
        coupon = discount.get("coupon") or {}
        items = []
        for line in (data.get("lines") or {}).get("data") or []:
            period = line.get("period") or {}
            plan = line.get("plan") or {}
            items.append(InvoiceItem(
                id=line.get("id"),
                description=line.get("description"),
                amount=int(line.get("amount") or 0),
                currency=line.get("currency") or currency,
                quantity=line.get("quantity"),
                plan_id=plan.get("id"),
                period_start=_ts(period.get("start")),
                period_end=_ts(period.get("end")),
            ))
        return cls(
            id=data["id"],
            customer=data.get("customer"),
            currency=currency,
            total_amount=int(data.get("total") or 0),
            subtotal_amount=int(data.get("subtotal") or 0),
            starting_balance=int(data.get("starting_balance") or 0),
            amount_off_cents=coupon.get("amount_off"),
            percent_off=coupon.get("percent_off"),
            coupon_id=coupon.get("id"),
            charge_id=data.get("charge"),
            date=_ts(data.get("created") or data.get("date")),
            settled=bool(data.get("paid")),
            items=items,
        )
