"""Shared test fixtures — single test DB and an in-memory gateway for all test modules."""
from __future__ import annotations

import dataclasses
import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

from cashier.db.tables import Base
from cashier.db.engine import get_session
from cashier.errors import GatewayUnavailableError, NotFoundError, Payment
from cashier.gateway.base import Gateway, GatewayConfig, GatewayCustomer, GatewaySubscription
from cashier.models.invoice import Invoice, InvoiceItem

TEST_DB_URL = "sqlite+aiosqlite:///file:cashier_test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from cashier.api.main import app  # noqa: E402
from cashier.api.deps import get_gateway, get_gateway_config  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Reconciliation writes open their own session from the engine module
import cashier.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


# ── In-memory gateway ─────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeGateway(Gateway):
    """Gateway double keeping customers, subscriptions and payments in dicts.

    Set `decline_next` / `require_action_next` to make the next payment
    attempt fail, or `unavailable` to make every call raise
    GatewayUnavailableError. `calls` records (method, id) pairs.
    """

    name = "fake"

    def __init__(self):
        super().__init__(GatewayConfig(name="fake", publishable_key="pk_test_fake", currency="usd"))
        self._seq = itertools.count(1)
        self.customers: dict[str, GatewayCustomer] = {}
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.payments: dict[str, Payment] = {}
        self.invoices: dict[str, Invoice] = {}
        self.pending: dict[str, list[InvoiceItem]] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.decline_next = False
        self.require_action_next = False
        self.unavailable = False
        self.period = timedelta(days=30)

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._seq)}"

    def _record(self, method: str, ref: Optional[str] = None) -> None:
        if self.unavailable:
            raise GatewayUnavailableError(f"fake gateway down during {method}")
        self.calls.append((method, ref))

    def _attempt(self, amount: int, customer: Optional[str]) -> Optional[Payment]:
        """A failing payment attempt when one was requested, else None."""
        status = None
        if self.decline_next:
            status = "requires_payment_method"
        elif self.require_action_next:
            status = "requires_action"
        self.decline_next = self.require_action_next = False
        if status is None:
            return None
        payment = Payment(
            id=self._next("pi"), status=status, amount=amount, currency="usd",
            client_secret="secret_123", customer=customer,
        )
        self.payments[payment.id] = payment
        return payment

    def _sub(self, subscription_id: str) -> GatewaySubscription:
        if subscription_id not in self.subscriptions:
            raise NotFoundError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    # Customers

    async def create_customer(self, email, name=None, payment_method=None, options=None):
        self._record("create_customer", email)
        customer = GatewayCustomer(
            id=self._next("cus"),
            email=email,
            card_brand="visa" if payment_method else None,
            card_last_four="4242" if payment_method else None,
        )
        self.customers[customer.id] = customer
        return customer

    async def get_customer(self, customer_id):
        self._record("get_customer", customer_id)
        if customer_id not in self.customers:
            raise NotFoundError(f"No such customer: {customer_id}")
        return self.customers[customer_id]

    async def update_default_payment_method(self, customer_id, payment_method):
        self._record("update_default_payment_method", customer_id)
        customer = await self.get_customer(customer_id)
        customer.card_brand, customer.card_last_four = "mastercard", "4444"
        return customer

    async def apply_customer_coupon(self, customer_id, coupon):
        self._record("apply_customer_coupon", customer_id)
        customer = await self.get_customer(customer_id)
        customer.coupon_id = coupon
        return customer

    # Subscriptions

    async def create_subscription(
        self, customer_id, plan, *, quantity=1, trial_end=None, coupon=None,
        billing_cycle_anchor=None, metadata=None, skip_trial=False,
    ):
        self._record("create_subscription", customer_id)
        trialing = trial_end is not None and not skip_trial and trial_end > _now()
        payment = None if trialing else self._attempt(1000 * quantity, customer_id)
        sub = GatewaySubscription(
            id=self._next("sub"),
            status="incomplete" if payment else ("trialing" if trialing else "active"),
            plan=plan,
            quantity=quantity,
            customer=customer_id,
            trial_end=trial_end if trialing else None,
            current_period_end=(trial_end if trialing else _now()) + self.period,
            coupon_id=coupon,
            latest_payment=payment,
        )
        self.subscriptions[sub.id] = sub
        return dataclasses.replace(sub)

    async def get_subscription(self, subscription_id):
        self._record("get_subscription", subscription_id)
        return dataclasses.replace(self._sub(subscription_id))

    async def update_subscription(
        self, subscription_id, *, plan=None, quantity=None, trial_end=None,
        end_trial_now=False, coupon=None, prorate=True, invoice_now=False,
    ):
        self._record("update_subscription", subscription_id)
        sub = self._sub(subscription_id)
        if plan is not None:
            sub.plan = plan
        if quantity is not None:
            sub.quantity = quantity
        if end_trial_now:
            sub.trial_end = None
            sub.status = "active"
        elif trial_end is not None:
            sub.trial_end = trial_end
        if coupon:
            sub.coupon_id = coupon
        sub.latest_payment = self._attempt(1000 * sub.quantity, sub.customer) if plan else None
        return dataclasses.replace(sub)

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        self._record("cancel_subscription", subscription_id)
        sub = self._sub(subscription_id)
        if at_period_end:
            sub.cancel_at_period_end = True
        else:
            sub.status = "cancelled"
        return dataclasses.replace(sub)

    async def resume_subscription(self, subscription_id, trial_end=None):
        self._record("resume_subscription", subscription_id)
        sub = self._sub(subscription_id)
        sub.cancel_at_period_end = False
        sub.status = "trialing" if trial_end is not None and trial_end > _now() else "active"
        return dataclasses.replace(sub)

    async def apply_subscription_coupon(self, subscription_id, coupon):
        self._record("apply_subscription_coupon", subscription_id)
        sub = self._sub(subscription_id)
        sub.coupon_id = coupon
        return dataclasses.replace(sub)

    async def remove_subscription_discounts(self, subscription_id):
        self._record("remove_subscription_discounts", subscription_id)
        self._sub(subscription_id).coupon_id = None

    # Payments & invoices

    async def charge(self, customer_id, amount, *, currency=None, payment_method=None, description=None, options=None):
        self._record("charge", customer_id)
        payment = self._attempt(amount, customer_id) or Payment(
            id=self._next("pi"), status="succeeded", amount=amount,
            currency=currency or "usd", customer=customer_id,
        )
        self.payments[payment.id] = payment
        payment.validate()
        return payment

    async def refund(self, charge_id, amount=None):
        self._record("refund", charge_id)
        original = self.payments.get(charge_id)
        return {"id": self._next("re"), "charge": charge_id, "amount": amount or (original.amount if original else 0)}

    async def tab(self, customer_id, description, amount, currency=None):
        self._record("tab", customer_id)
        item = InvoiceItem(id=self._next("ii"), description=description, amount=amount, currency=currency or "usd")
        self.pending.setdefault(customer_id, []).append(item)
        return item.model_dump()

    async def invoice_for(self, customer_id, description, amount, currency=None):
        await self.tab(customer_id, description, amount, currency)
        return await self.invoice_customer(customer_id)

    async def invoice_customer(self, customer_id):
        self._record("invoice_customer", customer_id)
        items = self.pending.pop(customer_id, [])
        if not items:
            return None
        total = sum(i.amount for i in items)
        invoice = Invoice(
            id=self._next("in"), customer=customer_id, total_amount=total,
            subtotal_amount=total, date=_now(), settled=True, items=items,
        )
        self.invoices[invoice.id] = invoice
        return invoice

    async def list_invoices(self, customer_id, include_pending=False):
        self._record("list_invoices", customer_id)
        return [
            inv for inv in self.invoices.values()
            if inv.customer == customer_id and (include_pending or inv.settled)
        ]

    async def get_invoice(self, invoice_id):
        self._record("get_invoice", invoice_id)
        if invoice_id not in self.invoices:
            raise NotFoundError(f"No such invoice: {invoice_id}")
        return self.invoices[invoice_id]

    async def get_payment(self, payment_id):
        self._record("get_payment", payment_id)
        if payment_id not in self.payments:
            raise NotFoundError(f"No such payment_intent: {payment_id}")
        return self.payments[payment_id]


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import cashier.db.user_tables  # noqa: F401
    import cashier.db.subscription_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: fake
    app.dependency_overrides[get_gateway_config] = lambda: fake.config
    yield fake
    app.dependency_overrides.pop(get_gateway, None)
    app.dependency_overrides.pop(get_gateway_config, None)


@pytest_asyncio.fixture
async def user(session):
    from cashier.db.user_tables import UserRow

    row = UserRow(id="user-1", email="taylor@example.com", name="Taylor Otwell")
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def client(gateway):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
