"""REST API endpoints for conversations and their messages.

Customers and staff exchange messages through these routes; the staff
inbox polls ``GET /conversations/{id}/messages?since=`` for new messages.
Staff operations (assign, transition, reopen, suggestions) require the
``X-Actor-ID`` header.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.dealsmart.api.deps import (
    get_actor,
    get_assistance_service,
    get_conversation_service,
    get_optional_actor,
)
from src.dealsmart.assistance.schemas import AIAssistanceRead, SuggestionResponse
from src.dealsmart.assistance.service import AssistanceService
from src.dealsmart.conversations.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationStatus,
    MessageAppendResult,
    MessageRead,
    SenderType,
    TransitionRead,
)
from src.dealsmart.conversations.service import ConversationService

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class PostMessageRequest(BaseModel):
    sender: SenderType
    body: str = Field(max_length=10000)
    sender_id: str | None = None


class AssignRequest(BaseModel):
    staff_id: str


class TransitionRequest(BaseModel):
    status: ConversationStatus
    reason: str | None = Field(default=None, max_length=500)


class ReopenRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SuggestionRequest(BaseModel):
    """Caller-supplied facts (prices, inventory) the suggestion may cite."""

    facts: dict[str, Any] = Field(default_factory=dict)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: ConversationCreate,
    service: ConversationService = Depends(get_conversation_service),
    actor: str | None = Depends(get_optional_actor),
) -> ConversationRead:
    return await service.create(body, actor=actor or body.customer_id)


@router.get("/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationRead:
    return await service.get(conversation_id)


@router.get("/{conversation_id}/messages", response_model=list[MessageRead])
async def list_messages(
    conversation_id: str,
    since: datetime | None = Query(default=None, description="Only messages created after this time"),
    service: ConversationService = Depends(get_conversation_service),
) -> list[MessageRead]:
    """Messages in order. Clients poll with ``since`` set to the last seen timestamp."""
    return await service.list_messages(conversation_id, since=since)


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageAppendResult,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: str,
    body: PostMessageRequest,
    service: ConversationService = Depends(get_conversation_service),
    actor: str | None = Depends(get_optional_actor),
) -> MessageAppendResult:
    return await service.append_message(
        conversation_id,
        body.sender,
        body.body,
        sender_id=body.sender_id or actor,
    )


@router.get("/{conversation_id}/transitions", response_model=list[TransitionRead])
async def list_transitions(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> list[TransitionRead]:
    return await service.list_transitions(conversation_id)


@router.post("/{conversation_id}/assign", response_model=ConversationRead)
async def assign_conversation(
    conversation_id: str,
    body: AssignRequest,
    service: ConversationService = Depends(get_conversation_service),
    actor: str = Depends(get_actor),
) -> ConversationRead:
    return await service.assign(conversation_id, body.staff_id, actor=actor)


@router.post("/{conversation_id}/transition", response_model=ConversationRead)
async def transition_conversation(
    conversation_id: str,
    body: TransitionRequest,
    service: ConversationService = Depends(get_conversation_service),
    actor: str = Depends(get_actor),
) -> ConversationRead:
    return await service.transition(conversation_id, body.status, actor=actor, reason=body.reason)


@router.post("/{conversation_id}/reopen", response_model=ConversationRead)
async def reopen_conversation(
    conversation_id: str,
    body: ReopenRequest | None = None,
    service: ConversationService = Depends(get_conversation_service),
    actor: str = Depends(get_actor),
) -> ConversationRead:
    reason = body.reason if body is not None else None
    return await service.reopen(conversation_id, actor=actor, reason=reason)


# ── Suggestions ──────────────────────────────────────────────────────────────


@router.post("/{conversation_id}/suggestions", response_model=SuggestionResponse)
async def request_suggestion(
    conversation_id: str,
    body: SuggestionRequest | None = None,
    assistance: AssistanceService = Depends(get_assistance_service),
    actor: str = Depends(get_actor),
) -> SuggestionResponse:
    """Draft a reply to the latest customer message.

    Returns 200 with ``suggestion.available = false`` when the provider is
    unavailable or its draft failed validation; nothing is stored then.
    """
    facts = body.facts if body is not None else None
    return await assistance.request_suggestion(conversation_id, facts=facts, actor=actor)


@router.get("/{conversation_id}/suggestions", response_model=list[AIAssistanceRead])
async def list_suggestions(
    conversation_id: str,
    assistance: AssistanceService = Depends(get_assistance_service),
) -> list[AIAssistanceRead]:
    return await assistance.list_for_conversation(conversation_id)
