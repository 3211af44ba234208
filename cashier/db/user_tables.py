"""Billable users — the entity subscriptions and gateway customers hang off."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String, DateTime

from cashier.db.tables import Base, utcnow


class UserRow(Base):
    """A billable user. Implements `cashier.billable.HasBillingAccount`."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)

    # Gateway customer (Stripe cus_..., Braintree numeric id)
    gateway_customer_id = Column(String(255), nullable=True, unique=True, index=True)

    # Default payment method metadata, refreshed from the gateway
    card_brand = Column(String(50), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    paypal_email = Column(String(320), nullable=True)

    # Generic trial (not tied to any subscription)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def billing_name(self) -> str:
        """Name shown on the gateway customer and invoices."""
        return self.name or self.email
