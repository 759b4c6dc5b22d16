"""SubscriptionState projection, written only by the billing webhook processor."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsmart.core.clock import utcnow
from src.dealsmart.core.database import Base


class SubscriptionStateModel(Base):
    """Current state of one provider subscription.

    ``(last_event_at, last_event_id)`` identify the event that produced the
    row; older events never overwrite it.
    """

    __tablename__ = "subscription_states"

    subscription_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    tier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    renews: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
