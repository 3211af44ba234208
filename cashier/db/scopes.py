"""SQL filters mirroring the lifecycle predicates in `cashier.services.lifecycle`.

Each function returns a boolean clause for `select(SubscriptionRow).where(...)`.
NULL timestamps are handled explicitly so `not_*` scopes include rows that
were never trialing or never cancelled.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_

from cashier.db.subscription_tables import SubscriptionRow
from cashier.models.subscription import (
    BILLABLE_STATUSES,
    INCOMPLETE_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    SubscriptionStatus,
)
from cashier.services.lifecycle import as_utc, utcnow


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def _billable(deactivate_past_due: bool):
    statuses = set(BILLABLE_STATUSES)
    if deactivate_past_due:
        statuses.discard(SubscriptionStatus.PAST_DUE.value)
    return SubscriptionRow.status.in_(sorted(statuses))


def on_trial(now: Optional[datetime] = None):
    return and_(SubscriptionRow.trial_ends_at.is_not(None), SubscriptionRow.trial_ends_at > _now(now))


def not_on_trial(now: Optional[datetime] = None):
    return or_(SubscriptionRow.trial_ends_at.is_(None), SubscriptionRow.trial_ends_at <= _now(now))


def cancelled():
    return SubscriptionRow.ends_at.is_not(None)


def not_cancelled():
    return SubscriptionRow.ends_at.is_(None)


def on_grace_period(now: Optional[datetime] = None):
    return and_(SubscriptionRow.ends_at.is_not(None), SubscriptionRow.ends_at > _now(now))


def not_on_grace_period(now: Optional[datetime] = None):
    return or_(SubscriptionRow.ends_at.is_(None), SubscriptionRow.ends_at <= _now(now))


def ended(now: Optional[datetime] = None):
    return and_(SubscriptionRow.ends_at.is_not(None), SubscriptionRow.ends_at <= _now(now))


def not_ended(now: Optional[datetime] = None):
    return or_(SubscriptionRow.ends_at.is_(None), SubscriptionRow.ends_at > _now(now))


def recurring(now: Optional[datetime] = None, deactivate_past_due: bool = False):
    return and_(not_on_trial(now), not_cancelled(), _billable(deactivate_past_due))


def active(now: Optional[datetime] = None, deactivate_past_due: bool = False):
    now = _now(now)
    return and_(
        SubscriptionRow.status.not_in(sorted(TERMINAL_FAILURE_STATUSES)),
        not_ended(now),
        or_(_billable(deactivate_past_due), on_trial(now), on_grace_period(now)),
    )


def incomplete():
    return SubscriptionRow.status.in_(sorted(INCOMPLETE_STATUSES))


def past_due():
    return SubscriptionRow.status == SubscriptionStatus.PAST_DUE.value
