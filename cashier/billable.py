"""
Billable entities
---
Any model that owns a gateway customer implements `HasBillingAccount`
explicitly (UserRow does). The helpers below answer entitlement questions
from the entity plus its already-loaded subscriptions, so they never touch
the database or the gateway.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol, runtime_checkable

from config.settings import settings
from cashier.services import lifecycle


@runtime_checkable
class HasBillingAccount(Protocol):
    id: str
    email: str
    name: Optional[str]
    gateway_customer_id: Optional[str]
    card_brand: Optional[str]
    card_last_four: Optional[str]
    paypal_email: Optional[str]
    trial_ends_at: Optional[datetime]


def has_gateway_id(billable: HasBillingAccount) -> bool:
    return bool(billable.gateway_customer_id)


def on_generic_trial(billable: HasBillingAccount, now: Optional[datetime] = None) -> bool:
    """Trial on the entity itself, not tied to any subscription."""
    trial_ends_at = lifecycle.as_utc(billable.trial_ends_at)
    now = lifecycle.as_utc(now) if now is not None else lifecycle.utcnow()
    return trial_ends_at is not None and now < trial_ends_at


def _created(subscription) -> datetime:
    return lifecycle.as_utc(getattr(subscription, "created_at", None)) or datetime.min.replace(tzinfo=timezone.utc)


def find_subscription(subscriptions: Iterable, name: str = "default"):
    """Newest subscription in the named slot, or None."""
    matches = [s for s in subscriptions if s.name == name]
    return max(matches, key=_created) if matches else None


def on_trial(
    billable: HasBillingAccount,
    subscriptions: Iterable,
    name: Optional[str] = None,
    plan: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    if on_generic_trial(billable, now):
        return True
    subscription = find_subscription(subscriptions, name or "default")
    if subscription is None or not lifecycle.on_trial(subscription, now):
        return False
    return plan is None or subscription.gateway_plan == plan


def subscribed(
    subscriptions: Iterable,
    name: str = "default",
    plan: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    subscription = find_subscription(subscriptions, name)
    if subscription is None:
        return False
    if not lifecycle.active(subscription, now, settings.DEACTIVATE_PAST_DUE):
        return False
    return plan is None or subscription.gateway_plan == plan


def subscribed_to_plan(
    subscriptions: Iterable,
    plans: str | Iterable[str],
    name: str = "default",
    now: Optional[datetime] = None,
) -> bool:
    """True when the named subscription is active on any of `plans`."""
    if isinstance(plans, str):
        plans = [plans]
    subscriptions = list(subscriptions)
    return any(subscribed(subscriptions, name, plan, now) for plan in plans)
