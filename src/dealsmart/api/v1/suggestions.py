"""REST API endpoints for staff decisions on AI suggestions."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.dealsmart.api.deps import get_actor, get_assistance_service
from src.dealsmart.assistance.schemas import AIAssistanceRead, DispositionResult
from src.dealsmart.assistance.service import AssistanceService

router = APIRouter(prefix="/api/v1/suggestions", tags=["suggestions"])


class EditRequest(BaseModel):
    text: str


class RateRequest(BaseModel):
    score: int


@router.get("/{assistance_id}", response_model=AIAssistanceRead)
async def get_suggestion(
    assistance_id: str,
    service: AssistanceService = Depends(get_assistance_service),
) -> AIAssistanceRead:
    return await service.get(assistance_id)


@router.post("/{assistance_id}/accept", response_model=DispositionResult)
async def accept_suggestion(
    assistance_id: str,
    service: AssistanceService = Depends(get_assistance_service),
    actor: str = Depends(get_actor),
) -> DispositionResult:
    """Send the suggested text as a staff message."""
    return await service.accept(assistance_id, actor=actor)


@router.post("/{assistance_id}/edit", response_model=DispositionResult)
async def edit_suggestion(
    assistance_id: str,
    body: EditRequest,
    service: AssistanceService = Depends(get_assistance_service),
    actor: str = Depends(get_actor),
) -> DispositionResult:
    """Send an edited version of the suggestion as a staff message."""
    return await service.edit(assistance_id, body.text, actor=actor)


@router.post("/{assistance_id}/reject", response_model=DispositionResult)
async def reject_suggestion(
    assistance_id: str,
    service: AssistanceService = Depends(get_assistance_service),
    actor: str = Depends(get_actor),
) -> DispositionResult:
    return await service.reject(assistance_id, actor=actor)


@router.post("/{assistance_id}/rate", response_model=DispositionResult)
async def rate_suggestion(
    assistance_id: str,
    body: RateRequest,
    service: AssistanceService = Depends(get_assistance_service),
    actor: str = Depends(get_actor),
) -> DispositionResult:
    """Rate a suggestion from 1 to 5; a later rating overwrites."""
    return await service.rate(assistance_id, body.score, actor=actor)
