"""Persistence model for the SQL-backed idempotency ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsmart.core.database import Base


class IdempotencyRecordModel(Base):
    """One idempotency key.

    The primary key on ``key`` is the uniqueness constraint that makes
    ``reserve()`` atomic: concurrent inserts of the same key fail for all
    but one caller.
    """

    __tablename__ = "idempotency_records"
    __table_args__ = (
        Index("ix_idempotency_records_reserved_at", "reserved_at"),
    )

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lease_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
