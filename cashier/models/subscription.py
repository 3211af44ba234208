"""Subscription status values and derived lifecycle states."""
from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    UNPAID = "unpaid"

    @classmethod
    def from_gateway(cls, value: str | None) -> "SubscriptionStatus":
        """Normalize a gateway status string.

        Stripe spells it "canceled", Braintree uses capitalized words
        ("Active", "Past Due", "Canceled", "Expired", "Pending").
        """
        raw = (value or "").strip().lower().replace(" ", "_")
        aliases = {
            "canceled": cls.CANCELLED,
            "expired": cls.CANCELLED,
            "pending": cls.ACTIVE,
        }
        if raw in aliases:
            return aliases[raw]
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown subscription status: {value!r}") from None


class LifecycleState(str, Enum):
    """Read-model state computed from (status, trial_ends_at, ends_at)."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    GRACE_PERIOD = "grace_period"
    ENDED = "ended"
    UNPAID = "unpaid"


# Plain string sets so membership works for raw DB values too
BILLABLE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
})

TERMINAL_FAILURE_STATUSES = frozenset({
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
    SubscriptionStatus.UNPAID.value,
})

INCOMPLETE_STATUSES = frozenset({
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
})
