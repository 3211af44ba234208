"""Subscription tables — local subscription state and the payment event log."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, JSON,
    ForeignKey, Index,
)
from sqlalchemy.orm import validates

from config.settings import settings
from cashier.db.tables import Base, utcnow
from cashier.errors import InvalidStateError
from cashier.models.subscription import LifecycleState, SubscriptionStatus
from cashier.services import lifecycle


class SubscriptionRow(Base):
    """One billable-user-to-plan subscription in a named slot.

    Rows are never deleted: cancelling sets `ends_at`, and the lifecycle
    predicates below are derived from (status, trial_ends_at, ends_at).
    A slot holds at most one non-ended subscription; the newest row wins.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Slot label: "default", "main", "swimming", ...
    name = Column(String(100), nullable=False, default="default")

    # Assigned by the gateway at creation, immutable afterwards
    gateway_id = Column(String(255), nullable=False, unique=True, index=True)
    gateway_plan = Column(String(255), nullable=False)

    # incomplete | incomplete_expired | trialing | active | past_due | cancelled | unpaid
    status = Column(String(30), nullable=False, default=SubscriptionStatus.ACTIVE.value)

    quantity = Column(Integer, nullable=False, default=1)

    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscriptions_user_name", "user_id", "name"),
        Index("ix_subscriptions_status", "status"),
    )

    @validates("gateway_id")
    def _validate_gateway_id(self, key: str, value: str) -> str:
        current = self.__dict__.get("gateway_id")
        if current is not None and current != value:
            raise InvalidStateError(
                f"Subscription {self.id} already has gateway id {current}; refusing to change it to {value}"
            )
        return value

    @validates("quantity")
    def _validate_quantity(self, key: str, value: int) -> int:
        if value is None or value < 1:
            raise InvalidStateError(f"Subscription quantity must be at least 1, got {value}")
        return value

    # ── Lifecycle predicates ────────────────────────────────────────────────

    def on_trial(self, now: Optional[datetime] = None) -> bool:
        return lifecycle.on_trial(self, now)

    def on_grace_period(self, now: Optional[datetime] = None) -> bool:
        return lifecycle.on_grace_period(self, now)

    def cancelled(self) -> bool:
        return lifecycle.cancelled(self)

    def ended(self, now: Optional[datetime] = None) -> bool:
        return lifecycle.ended(self, now)

    def recurring(self, now: Optional[datetime] = None) -> bool:
        return lifecycle.recurring(self, now, settings.DEACTIVATE_PAST_DUE)

    def active(self, now: Optional[datetime] = None) -> bool:
        return lifecycle.active(self, now, settings.DEACTIVATE_PAST_DUE)

    def valid(self, now: Optional[datetime] = None) -> bool:
        """Alias used by entitlement checks."""
        return self.active(now)

    def incomplete(self) -> bool:
        return lifecycle.incomplete(self)

    def past_due(self) -> bool:
        return lifecycle.past_due(self)

    def has_plan(self, plan: str) -> bool:
        return self.gateway_plan == plan

    def state(self, now: Optional[datetime] = None) -> LifecycleState:
        return lifecycle.state_of(self, now)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRow {self.name!r} gateway_id={self.gateway_id!r} "
            f"plan={self.gateway_plan!r} status={self.status!r}>"
        )


class PaymentEventRow(Base):
    """Immutable log of payment events (webhooks, local lifecycle changes, refunds)."""
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)

    # Gateway event id for webhooks (evt_...); null for local events
    gateway_event_id = Column(String(255), nullable=True, index=True)

    # e.g. customer.subscription.updated | subscription.swapped | reconciliation.required
    event_type = Column(String(100), nullable=False, index=True)

    # Source: stripe | braintree | local
    source = Column(String(20), nullable=False)

    payload = Column(JSON, nullable=True)

    # Amount in cents
    amount_cents = Column(Float, nullable=True)
    currency = Column(String(3), default="USD")

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("ix_payment_events_source_type", "source", "event_type"),
    )
