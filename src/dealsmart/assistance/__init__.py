"""AI-assisted replies: context-only suggestion engine and staff dispositions.

Exports:
    SuggestionEngine: Provider call + output validation.
    AssistanceService: request_suggestion / accept / reject / edit / rate.
    SuggestionProvider, LiteLLMSuggestionProvider: Provider boundary.
    Suggestion, SuggestionContext, Disposition: Schemas.
"""

from __future__ import annotations

from src.dealsmart.assistance.engine import SuggestionEngine
from src.dealsmart.assistance.provider import LiteLLMSuggestionProvider, SuggestionProvider
from src.dealsmart.assistance.repository import AIAssistanceRepository
from src.dealsmart.assistance.schemas import (
    AIAssistanceRead,
    Disposition,
    ProviderReply,
    Suggestion,
    SuggestionContext,
    SuggestionFlag,
)
from src.dealsmart.assistance.service import AssistanceService

__all__ = [
    "AIAssistanceRead",
    "AIAssistanceRepository",
    "AssistanceService",
    "Disposition",
    "LiteLLMSuggestionProvider",
    "ProviderReply",
    "Suggestion",
    "SuggestionContext",
    "SuggestionEngine",
    "SuggestionFlag",
    "SuggestionProvider",
]
