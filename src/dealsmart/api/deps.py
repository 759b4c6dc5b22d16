"""FastAPI dependency injection for wired components and the acting user.

Components are built once in the application lifespan and stored on
``app.state``; these dependencies hand them to endpoint functions and
answer 503 when a component failed to initialize.
"""

from __future__ import annotations

from typing import Any

from fastapi import Header, HTTPException, Request, status

from src.dealsmart.assistance.service import AssistanceService
from src.dealsmart.billing.processor import BillingWebhookProcessor
from src.dealsmart.conversations.service import ConversationService
from src.dealsmart.core.errors import AuthError
from src.dealsmart.orchestration.orchestrator import SyncOrchestrator


def _from_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not available. The application may not have initialized.",
        )
    return component


def get_conversation_service(request: Request) -> ConversationService:
    """Retrieve the ConversationService from app.state, 503 if not available."""
    return _from_state(request, "conversation_service", "ConversationService")


def get_assistance_service(request: Request) -> AssistanceService:
    """Retrieve the AssistanceService from app.state, 503 if not available."""
    return _from_state(request, "assistance_service", "AssistanceService")


def get_billing_processor(request: Request) -> BillingWebhookProcessor:
    """Retrieve the BillingWebhookProcessor from app.state, 503 if not available."""
    return _from_state(request, "billing_processor", "BillingWebhookProcessor")


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Retrieve the SyncOrchestrator from app.state, 503 if not available."""
    return _from_state(request, "orchestrator", "SyncOrchestrator")


async def get_actor(x_actor_id: str | None = Header(default=None)) -> str:
    """The authenticated staff member, as set by the upstream auth gateway.

    Raises:
        AuthError: If the X-Actor-ID header is missing or blank (mapped to 401).
    """
    if not x_actor_id or not x_actor_id.strip():
        raise AuthError("Missing X-Actor-ID header")
    return x_actor_id.strip()


async def get_optional_actor(x_actor_id: str | None = Header(default=None)) -> str | None:
    """The acting user when known (customer-facing routes may omit it)."""
    if x_actor_id and x_actor_id.strip():
        return x_actor_id.strip()
    return None
