"""
Subscription service
---
Orchestrates the lifecycle state machine against the payment gateway.

Every mutating operation follows the same order:
  1. check local preconditions (no gateway call when they fail)
  2. call the gateway
  3. apply the result to the row, log a payment event, commit

If step 3 fails after the gateway already accepted the change, a
`reconciliation.required` event is written on a fresh session and the error
is re-raised. The next customer.subscription.updated webhook brings the row
back in line with the gateway.

Payment problems on create/swap do not roll anything back: the plan change
is kept locally with status `incomplete`, and the caller gets the payment
attempt (SubscriptionResult on create, PaymentFailure/ActionRequired on swap)
to send the customer to the confirmation page.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cashier.billable import on_generic_trial
from cashier.db.repository import SubscriptionRepository, log_payment_event
from cashier.db.subscription_tables import SubscriptionRow
from cashier.db.user_tables import UserRow
from cashier.errors import (
    ActionRequired,
    IncompletePayment,
    InvalidStateError,
    Payment,
    PaymentFailure,
)
from cashier.gateway.base import Gateway, GatewayCustomer, GatewaySubscription
from cashier.models.subscription import SubscriptionStatus
from cashier.services.lifecycle import as_utc, utcnow

logger = logging.getLogger(__name__)


def _needs_attention(payment: Optional[Payment]) -> bool:
    return payment is not None and (payment.requires_payment_method() or payment.requires_action())


def _payment_error(sub: SubscriptionRow, payment: Payment) -> IncompletePayment:
    if payment.requires_action():
        return ActionRequired.for_subscription(sub.gateway_id, sub.gateway_plan, payment)
    return PaymentFailure.for_subscription(sub.gateway_id, sub.gateway_plan, payment)


def apply_customer(billable: UserRow, customer: GatewayCustomer) -> None:
    """Copy gateway customer id and default payment method metadata."""
    billable.gateway_customer_id = customer.id
    billable.card_brand = customer.card_brand
    billable.card_last_four = customer.card_last_four
    billable.paypal_email = customer.paypal_email


def sync_subscription(
    sub: SubscriptionRow, remote: GatewaySubscription, now: Optional[datetime] = None
) -> SubscriptionRow:
    """Apply the gateway's view of a subscription to the local row.

    Safe to repeat with the same payload. `gateway_id` is never touched.
    """
    now = as_utc(now) if now is not None else utcnow()

    sub.status = remote.status
    if remote.plan:
        sub.gateway_plan = remote.plan
    sub.quantity = max(1, int(remote.quantity or 1))
    if remote.trial_end is not None and as_utc(sub.trial_ends_at) != remote.trial_end:
        sub.trial_ends_at = remote.trial_end

    terminated = remote.status == SubscriptionStatus.INCOMPLETE_EXPIRED.value or (
        remote.status == SubscriptionStatus.CANCELLED.value and not remote.cancel_at_period_end
    )
    if terminated:
        if not sub.ended(now):
            sub.ends_at = now
    elif remote.cancel_at_period_end:
        if sub.on_trial(now):
            sub.ends_at = sub.trial_ends_at
        else:
            sub.ends_at = remote.current_period_end or now
    else:
        sub.ends_at = None
    return sub


async def record_reconciliation(
    session_factory: Callable[[], AsyncSession],
    *,
    user_id: Optional[str],
    gateway_id: str,
    action: str,
    error: Exception,
) -> None:
    """Best-effort note that local state lags behind the gateway."""
    try:
        async with session_factory() as session:
            log_payment_event(
                session, "reconciliation.required", "local",
                user_id=user_id,
                payload={"gateway_id": gateway_id, "action": action, "error": str(error)},
            )
            await session.commit()
    except SQLAlchemyError:
        logger.exception("Could not record reconciliation event for %s (%s)", gateway_id, action)


class _UnitOfWork:
    """Shared commit path for the manager and the builder."""

    gateway: Gateway
    session: AsyncSession
    _session_factory: Optional[Callable[[], AsyncSession]]

    def _factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is not None:
            return self._session_factory
        from cashier.db import engine
        return engine.async_session

    async def _persist(self, sub: SubscriptionRow, action: str, payload: Optional[dict[str, Any]] = None) -> None:
        user_id, gateway_id = sub.user_id, sub.gateway_id
        log_payment_event(
            self.session, f"subscription.{action}", "local",
            user_id=user_id,
            subscription_id=sub.id,
            payload={"gateway_id": gateway_id, **(payload or {})},
        )
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Persist failed after gateway accepted %s for %s: %s", action, gateway_id, exc
            )
            await self.session.rollback()
            await record_reconciliation(
                self._factory(), user_id=user_id, gateway_id=gateway_id, action=action, error=exc
            )
            raise
        logger.info("Subscription %s %s (status=%s plan=%s)", gateway_id, action, sub.status, sub.gateway_plan)


@dataclass
class SubscriptionResult:
    """Outcome of creating a subscription.

    The row is always persisted; `payment` is the first invoice's payment
    attempt when the gateway reported one.
    """

    subscription: SubscriptionRow
    payment: Optional[Payment] = None

    @property
    def requires_action(self) -> bool:
        return self.payment is not None and self.payment.requires_action()

    @property
    def payment_failed(self) -> bool:
        return self.payment is not None and self.payment.requires_payment_method()

    @property
    def ok(self) -> bool:
        return not (self.requires_action or self.payment_failed)

    def raise_for_payment(self) -> "SubscriptionResult":
        if not self.ok:
            raise _payment_error(self.subscription, self.payment)
        return self


class SubscriptionManager(_UnitOfWork):
    """Lifecycle operations on one persisted subscription."""

    def __init__(
        self,
        subscription: SubscriptionRow,
        gateway: Gateway,
        session: AsyncSession,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.subscription = subscription
        self.gateway = gateway
        self.session = session
        self._session_factory = session_factory

    # ── Cancel / resume ──────────────────────────────────────────────────────

    async def cancel(self, at_period_end: bool = True) -> SubscriptionRow:
        """Cancel at the end of the billing period; the grace period runs until then."""
        if not at_period_end:
            return await self.cancel_now()
        sub = self.subscription
        remote = await self.gateway.cancel_subscription(sub.gateway_id, at_period_end=True)

        if sub.on_trial():
            sub.ends_at = sub.trial_ends_at
        else:
            sub.ends_at = remote.current_period_end or utcnow()
        await self._persist(sub, "cancelled", {"ends_at": sub.ends_at.isoformat()})
        return sub

    async def cancel_now(self) -> SubscriptionRow:
        sub = self.subscription
        await self.gateway.cancel_subscription(sub.gateway_id, at_period_end=False)
        sub.status = SubscriptionStatus.CANCELLED.value
        sub.ends_at = utcnow()
        await self._persist(sub, "cancelled_now")
        return sub

    async def resume(self) -> SubscriptionRow:
        sub = self.subscription
        if not sub.on_grace_period():
            raise InvalidStateError("Unable to resume subscription that is not within grace period.")

        trial_end = sub.trial_ends_at if sub.on_trial() else None
        remote = await self.gateway.resume_subscription(sub.gateway_id, trial_end=as_utc(trial_end))
        if remote.id != sub.gateway_id:
            return await self._replace(sub, remote)

        sub.ends_at = None
        sub.status = remote.status
        await self._persist(sub, "resumed")
        return sub

    async def _replace(self, old: SubscriptionRow, remote: GatewaySubscription) -> SubscriptionRow:
        """The gateway resumed by starting a new subscription: close the old row, open one for the new id."""
        now = utcnow()
        old.status = SubscriptionStatus.CANCELLED.value
        old.ends_at = now
        new = SubscriptionRow(
            id=str(uuid.uuid4()),
            user_id=old.user_id,
            name=old.name,
            gateway_id=remote.id,
            gateway_plan=remote.plan or old.gateway_plan,
            status=remote.status,
            quantity=old.quantity,
            trial_ends_at=old.trial_ends_at,
            created_at=now,
        )
        self.session.add(new)
        self.subscription = new
        await self._persist(new, "resumed", {"replaces": old.gateway_id})
        return new

    # ── Plans ────────────────────────────────────────────────────────────────

    async def swap(
        self,
        plan: str,
        *,
        prorate: bool = True,
        invoice_now: bool = False,
        coupon: Optional[str] = None,
        skip_trial: bool = False,
    ) -> SubscriptionRow:
        """Move to another plan, keeping quantity and any running trial.

        Raises PaymentFailure / ActionRequired after persisting the new plan
        when the proration payment does not go through.
        """
        sub = self.subscription
        if sub.ended():
            raise InvalidStateError(f"Unable to swap plans for ended subscription {sub.gateway_id}.")

        trial_end = None
        if not skip_trial and sub.on_trial():
            trial_end = as_utc(sub.trial_ends_at)

        remote: Optional[GatewaySubscription] = None
        try:
            remote = await self.gateway.update_subscription(
                sub.gateway_id,
                plan=plan,
                quantity=sub.quantity,
                trial_end=trial_end,
                end_trial_now=skip_trial,
                coupon=coupon,
                prorate=prorate,
                invoice_now=invoice_now,
            )
            payment = remote.latest_payment
        except IncompletePayment as exc:
            payment = exc.payment

        previous = sub.gateway_plan
        sub.gateway_plan = plan
        if skip_trial:
            sub.trial_ends_at = None
        failed = _needs_attention(payment)
        if failed:
            sub.status = SubscriptionStatus.INCOMPLETE.value
        elif remote is not None:
            sub.status = remote.status

        await self._persist(sub, "swapped", {
            "plan": plan,
            "previous_plan": previous,
            "payment_id": payment.id if failed else None,
        })
        if failed:
            raise _payment_error(sub, payment)
        return sub

    # ── Quantity ─────────────────────────────────────────────────────────────

    async def update_quantity(self, quantity: int, prorate: bool = True) -> SubscriptionRow:
        sub = self.subscription
        if sub.incomplete():
            raise InvalidStateError(
                f"Unable to change the quantity of incomplete subscription {sub.gateway_id}."
            )
        if quantity < 1:
            raise InvalidStateError(f"Subscription quantity must be at least 1, got {quantity}")
        if quantity == sub.quantity:
            return sub

        remote = await self.gateway.update_subscription(sub.gateway_id, quantity=quantity, prorate=prorate)
        previous = sub.quantity
        sub.quantity = quantity
        sub.status = remote.status
        await self._persist(sub, "quantity_updated", {"quantity": quantity, "previous_quantity": previous})
        return sub

    async def increment_quantity(self, by: int = 1) -> SubscriptionRow:
        return await self.update_quantity(self.subscription.quantity + by)

    async def decrement_quantity(self, by: int = 1) -> SubscriptionRow:
        """Lower the quantity, never below 1."""
        return await self.update_quantity(max(1, self.subscription.quantity - by))

    # ── Discounts ────────────────────────────────────────────────────────────

    async def apply_coupon(self, coupon: str, remove_others: bool = False) -> SubscriptionRow:
        sub = self.subscription
        if remove_others:
            await self.gateway.remove_subscription_discounts(sub.gateway_id)
        await self.gateway.apply_subscription_coupon(sub.gateway_id, coupon)
        await self._persist(sub, "coupon_applied", {"coupon": coupon, "removed_others": remove_others})
        return sub

    # ── Sync ─────────────────────────────────────────────────────────────────

    async def sync_from_gateway(self, remote: GatewaySubscription) -> SubscriptionRow:
        sync_subscription(self.subscription, remote)
        await self._persist(self.subscription, "synced", {"status": remote.status})
        return self.subscription

    async def refresh(self) -> SubscriptionRow:
        """Pull the subscription from the gateway and apply it."""
        remote = await self.gateway.get_subscription(self.subscription.gateway_id)
        return await self.sync_from_gateway(remote)


class SubscriptionBuilder(_UnitOfWork):
    """Fluent builder for a new subscription.

        result = await (
            SubscriptionBuilder(user, "default", "monthly-10", gateway, session)
            .trial_days(7)
            .with_coupon("WELCOME")
            .create("pm_card_visa")
        )
    """

    def __init__(
        self,
        billable: UserRow,
        name: str,
        plan: str,
        gateway: Gateway,
        session: AsyncSession,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.billable = billable
        self.name = name
        self.plan = plan
        self.gateway = gateway
        self.session = session
        self._session_factory = session_factory

        self._quantity = 1
        self._trial_end: Optional[datetime] = None
        self._skip_trial = False
        self._coupon: Optional[str] = None
        self._anchor: Optional[datetime] = None
        self._metadata: dict[str, str] = {}

    def quantity(self, quantity: int) -> "SubscriptionBuilder":
        if quantity < 1:
            raise ValueError(f"Subscription quantity must be at least 1, got {quantity}")
        self._quantity = quantity
        return self

    def trial_days(self, days: int) -> "SubscriptionBuilder":
        self._trial_end = utcnow() + timedelta(days=days)
        return self

    def trial_until(self, when: datetime) -> "SubscriptionBuilder":
        self._trial_end = as_utc(when)
        return self

    def skip_trial(self) -> "SubscriptionBuilder":
        self._skip_trial = True
        return self

    def with_coupon(self, coupon: str) -> "SubscriptionBuilder":
        self._coupon = coupon
        return self

    def anchor_billing_cycle_on(self, when: datetime) -> "SubscriptionBuilder":
        self._anchor = as_utc(when)
        return self

    def with_metadata(self, metadata: dict[str, str]) -> "SubscriptionBuilder":
        self._metadata.update(metadata)
        return self

    def _trial_end_for_payload(self) -> Optional[datetime]:
        if self._skip_trial:
            return None
        if self._trial_end is not None:
            return self._trial_end
        if on_generic_trial(self.billable):
            return as_utc(self.billable.trial_ends_at)
        return None

    async def _ensure_customer(self, payment_method: Optional[str], options: Optional[dict]) -> str:
        billable = self.billable
        if not billable.gateway_customer_id:
            customer = await self.gateway.create_customer(
                billable.email, billable.billing_name(), payment_method, options
            )
            apply_customer(billable, customer)
        elif payment_method:
            customer = await self.gateway.update_default_payment_method(
                billable.gateway_customer_id, payment_method
            )
            apply_customer(billable, customer)
        return billable.gateway_customer_id

    async def add(self, customer_options: Optional[dict] = None) -> SubscriptionResult:
        """Create using the customer's existing default payment method."""
        return await self.create(None, customer_options)

    async def create(
        self,
        payment_method: Optional[str] = None,
        customer_options: Optional[dict[str, Any]] = None,
    ) -> SubscriptionResult:
        existing = await SubscriptionRepository(self.session).for_user(self.billable.id, self.name)
        if existing is not None and not existing.ended():
            raise InvalidStateError(
                f'User {self.billable.id} already has a "{self.name}" subscription ({existing.gateway_id}).'
            )

        customer_id = await self._ensure_customer(payment_method, customer_options)
        trial_end = self._trial_end_for_payload()
        remote = await self.gateway.create_subscription(
            customer_id,
            self.plan,
            quantity=self._quantity,
            trial_end=trial_end,
            coupon=self._coupon,
            billing_cycle_anchor=self._anchor,
            metadata=self._metadata or None,
            skip_trial=self._skip_trial,
        )

        payment = remote.latest_payment
        status = remote.status
        if _needs_attention(payment):
            status = SubscriptionStatus.INCOMPLETE.value

        sub = SubscriptionRow(
            id=str(uuid.uuid4()),
            user_id=self.billable.id,
            name=self.name,
            gateway_id=remote.id,
            gateway_plan=self.plan,
            status=status,
            quantity=max(1, remote.quantity or self._quantity),
            trial_ends_at=None if self._skip_trial else (remote.trial_end or trial_end),
            ends_at=None,
        )
        self.session.add(sub)
        await self._persist(sub, "created", {"plan": self.plan, "status": status})
        return SubscriptionResult(subscription=sub, payment=payment)
