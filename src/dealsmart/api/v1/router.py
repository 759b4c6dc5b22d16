"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealsmart.api.v1 import conversations, events, health, status, suggestions, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(status.router)
router.include_router(conversations.router)
router.include_router(suggestions.router)
router.include_router(webhooks.router)
router.include_router(events.router)
