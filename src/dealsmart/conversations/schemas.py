"""Pydantic schemas for conversations, messages and status transitions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SenderType(str, Enum):
    """Who wrote a message."""

    CUSTOMER = "customer"
    STAFF = "staff"
    AI = "ai"


# ── Inputs ──────────────────────────────────────────────────────────────────


class ConversationCreate(BaseModel):
    """Fields needed to open a conversation with a customer."""

    customer_id: str = Field(min_length=1, max_length=100)
    customer_email: str | None = None
    customer_name: str | None = None
    subject: str | None = Field(default=None, max_length=300)
    priority: Priority = Priority.NORMAL
    source_metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer_id")
    @classmethod
    def _strip_customer_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "customer_id must not be blank"
            raise ValueError(msg)
        return value


class MessageCreate(BaseModel):
    """A message to append to a conversation."""

    sender: SenderType
    body: str = Field(min_length=1, max_length=10000)
    sender_id: str | None = None
    ai_assistance_id: str | None = None


# ── Read models ─────────────────────────────────────────────────────────────


class ConversationRead(BaseModel):
    id: str
    customer_id: str
    customer_email: str | None = None
    customer_name: str | None = None
    subject: str | None = None
    assigned_to: str | None = None
    status: ConversationStatus
    priority: Priority
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class MessageRead(BaseModel):
    id: str
    conversation_id: str
    sequence: int
    sender: SenderType
    sender_id: str | None = None
    body: str
    ai_assistance_id: str | None = None
    created_at: datetime


class TransitionRead(BaseModel):
    """One recorded status change with its actor."""

    id: str
    conversation_id: str
    from_status: ConversationStatus
    to_status: ConversationStatus
    actor: str
    reason: str | None = None
    created_at: datetime


class MessageAppendResult(BaseModel):
    """Outcome of appending a message.

    ``transition`` is set when the message moved the conversation to a new
    status (customer reply on a pending or resolved conversation).
    """

    message: MessageRead
    conversation: ConversationRead
    transition: TransitionRead | None = None
