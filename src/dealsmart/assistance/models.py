"""AIAssistance persistence model. Rows are never deleted (audit trail)."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsmart.core.clock import utcnow
from src.dealsmart.core.database import Base


class AIAssistanceModel(Base):
    """A drafted reply attached to the customer message it answers.

    ``disposition`` moves from ``pending`` to one of accepted / rejected /
    edited via conditional updates; ``rating`` may be overwritten.
    """

    __tablename__ = "ai_assistance"
    __table_args__ = (
        Index("ix_ai_assistance_conversation", "conversation_id"),
        Index("ix_ai_assistance_message", "message_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    suggested_text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    needs_clarification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flags: Mapped[list] = mapped_column(JSON, default=list)
    requested_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disposition: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    final_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sent_message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    disposition_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disposition_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
