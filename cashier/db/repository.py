"""Subscription/user repository — async lookups and the payment event log."""
from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cashier.db.subscription_tables import PaymentEventRow, SubscriptionRow
from cashier.db.user_tables import UserRow


class SubscriptionRepository:
    """Async subscription queries backed by SQLAlchemy."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, subscription_id: str) -> Optional[SubscriptionRow]:
        return await self.session.get(SubscriptionRow, subscription_id)

    async def by_gateway_id(self, gateway_id: str) -> Optional[SubscriptionRow]:
        stmt = select(SubscriptionRow).where(SubscriptionRow.gateway_id == gateway_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def for_user(self, user_id: str, name: str = "default") -> Optional[SubscriptionRow]:
        """Newest subscription in the named slot."""
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id, SubscriptionRow.name == name)
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_for_user(self, user_id: str) -> list[SubscriptionRow]:
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id)
            .order_by(SubscriptionRow.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def where(self, *clauses, user_id: str | None = None) -> list[SubscriptionRow]:
        """Run scope clauses from `cashier.db.scopes`, optionally for one user."""
        stmt = select(SubscriptionRow).where(*clauses)
        if user_id is not None:
            stmt = stmt.where(SubscriptionRow.user_id == user_id)
        result = await self.session.execute(stmt.order_by(SubscriptionRow.created_at))
        return list(result.scalars().all())

    def add(self, row: SubscriptionRow) -> SubscriptionRow:
        self.session.add(row)
        return row


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[UserRow]:
        return await self.session.get(UserRow, user_id)

    async def by_email(self, email: str) -> Optional[UserRow]:
        result = await self.session.execute(select(UserRow).where(UserRow.email == email))
        return result.scalar_one_or_none()

    async def by_customer_id(self, customer_id: str) -> Optional[UserRow]:
        result = await self.session.execute(
            select(UserRow).where(UserRow.gateway_customer_id == customer_id)
        )
        return result.scalar_one_or_none()


def log_payment_event(
    session: AsyncSession,
    event_type: str,
    source: str,
    *,
    user_id: str | None = None,
    subscription_id: str | None = None,
    gateway_event_id: str | None = None,
    payload: dict[str, Any] | None = None,
    amount_cents: float | None = None,
    currency: str | None = None,
) -> PaymentEventRow:
    """Write immutable payment event log."""
    event = PaymentEventRow(
        id=str(uuid.uuid4()),
        user_id=user_id,
        subscription_id=subscription_id,
        gateway_event_id=gateway_event_id,
        event_type=event_type,
        source=source,
        payload=payload,
        amount_cents=amount_cents,
        currency=(currency or "usd").upper(),
    )
    session.add(event)
    return event
