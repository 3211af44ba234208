from cashier.models.invoice import Invoice, InvoiceItem, format_amount
from cashier.models.subscription import (
    BILLABLE_STATUSES,
    INCOMPLETE_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    LifecycleState,
    SubscriptionStatus,
)

__all__ = [
    "BILLABLE_STATUSES",
    "INCOMPLETE_STATUSES",
    "TERMINAL_FAILURE_STATUSES",
    "Invoice",
    "InvoiceItem",
    "LifecycleState",
    "SubscriptionStatus",
    "format_amount",
]
