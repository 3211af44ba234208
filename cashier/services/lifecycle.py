"""
Subscription lifecycle predicates
---
Pure functions over the persisted triple (status, trial_ends_at, ends_at).
No I/O: every predicate takes an optional `now` so callers and tests can pin
the clock. Naive datetimes (SQLite drops tzinfo) are read as UTC.

    on_trial         trial_ends_at set and now < trial_ends_at
    on_grace_period  ends_at set and now < ends_at
    cancelled        ends_at set
    ended            cancelled and not on_grace_period
    recurring        not on_trial, not cancelled, billable status
    active           (billable status | on_trial | on_grace_period)
                     and not ended and not a terminal failure status
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol

from cashier.models.subscription import (
    BILLABLE_STATUSES,
    INCOMPLETE_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    LifecycleState,
    SubscriptionStatus,
)


class SubscriptionFields(Protocol):
    status: str
    trial_ends_at: Optional[datetime]
    ends_at: Optional[datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; leave aware ones alone."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _status(sub: SubscriptionFields) -> str:
    status = sub.status
    return status.value if isinstance(status, SubscriptionStatus) else str(status)


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def on_trial(sub: SubscriptionFields, now: Optional[datetime] = None) -> bool:
    trial_ends_at = as_utc(sub.trial_ends_at)
    return trial_ends_at is not None and _now(now) < trial_ends_at


def on_grace_period(sub: SubscriptionFields, now: Optional[datetime] = None) -> bool:
    ends_at = as_utc(sub.ends_at)
    return ends_at is not None and _now(now) < ends_at


def cancelled(sub: SubscriptionFields) -> bool:
    return sub.ends_at is not None


def ended(sub: SubscriptionFields, now: Optional[datetime] = None) -> bool:
    return cancelled(sub) and not on_grace_period(sub, now)


def incomplete(sub: SubscriptionFields) -> bool:
    return _status(sub) in INCOMPLETE_STATUSES


def past_due(sub: SubscriptionFields) -> bool:
    return _status(sub) == SubscriptionStatus.PAST_DUE.value


def billable_status(sub: SubscriptionFields, deactivate_past_due: bool = False) -> bool:
    status = _status(sub)
    if deactivate_past_due and status == SubscriptionStatus.PAST_DUE.value:
        return False
    return status in BILLABLE_STATUSES


def recurring(
    sub: SubscriptionFields,
    now: Optional[datetime] = None,
    deactivate_past_due: bool = False,
) -> bool:
    return (
        not on_trial(sub, now)
        and not cancelled(sub)
        and billable_status(sub, deactivate_past_due)
    )


def active(
    sub: SubscriptionFields,
    now: Optional[datetime] = None,
    deactivate_past_due: bool = False,
) -> bool:
    if _status(sub) in TERMINAL_FAILURE_STATUSES:
        return False
    if ended(sub, now):
        return False
    return (
        billable_status(sub, deactivate_past_due)
        or on_trial(sub, now)
        or on_grace_period(sub, now)
    )


def state_of(sub: SubscriptionFields, now: Optional[datetime] = None) -> LifecycleState:
    """Collapse the persisted fields into a single read-model state."""
    status = _status(sub)
    if status == SubscriptionStatus.INCOMPLETE.value:
        return LifecycleState.INCOMPLETE
    if status == SubscriptionStatus.INCOMPLETE_EXPIRED.value:
        return LifecycleState.INCOMPLETE_EXPIRED
    if status == SubscriptionStatus.UNPAID.value:
        return LifecycleState.UNPAID
    if cancelled(sub):
        return LifecycleState.GRACE_PERIOD if on_grace_period(sub, now) else LifecycleState.ENDED
    if status == SubscriptionStatus.CANCELLED.value:
        return LifecycleState.ENDED
    if on_trial(sub, now):
        return LifecycleState.TRIALING
    if status == SubscriptionStatus.PAST_DUE.value:
        return LifecycleState.PAST_DUE
    return LifecycleState.ACTIVE
