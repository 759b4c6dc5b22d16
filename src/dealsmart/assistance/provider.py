"""AI provider boundary.

SuggestionProvider is the only thing the engine calls. The LiteLLM
implementation routes to Claude with GPT-4o as fallback (the prompt it sends
has customer text scrubbed, see ``prompts``), and translates provider errors into
the transient / terminal taxonomy the RetryExecutor understands:
rate limits, timeouts and outages are TransientError; malformed output and
misconfiguration are terminal.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import litellm
import structlog
from litellm import Router

from src.dealsmart.assistance.prompts import build_messages, parse_reply
from src.dealsmart.assistance.schemas import ProviderReply, SuggestionContext
from src.dealsmart.config import Settings
from src.dealsmart.core.errors import DealSmartError, TransientError
from src.dealsmart.core.monitoring import track_llm_call

logger = structlog.get_logger(__name__)

MODEL_GROUP = "suggestions"

_TRANSIENT_PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


class ProviderUnavailableError(DealSmartError):
    """No provider is configured."""


class SuggestionProvider(ABC):
    """Turns a SuggestionContext into a draft reply."""

    @abstractmethod
    async def generate(self, context: SuggestionContext) -> ProviderReply:
        ...


def build_router(settings: Settings) -> Router | None:
    """LiteLLM Router for the configured keys, or None when none are set.

    Retries are left to the RetryExecutor, so the router makes one attempt.
    """
    model_list = []

    # Primary: Claude Sonnet
    if settings.ANTHROPIC_API_KEY:
        model_list.append({
            "model_name": MODEL_GROUP,
            "litellm_params": {
                "model": "anthropic/claude-sonnet-4-20250514",
                "api_key": settings.ANTHROPIC_API_KEY,
            },
        })

    # Fallback: GPT-4o
    if settings.OPENAI_API_KEY:
        model_list.append({
            "model_name": MODEL_GROUP,
            "litellm_params": {
                "model": "openai/gpt-4o",
                "api_key": settings.OPENAI_API_KEY,
            },
        })

    if not model_list:
        logger.warning("No LLM API keys configured -- suggestions will be unavailable")
        return None

    return Router(
        model_list=model_list,
        num_retries=0,
        timeout=settings.LLM_TIMEOUT,
        allowed_fails=3,
        cooldown_time=30,
    )


class LiteLLMSuggestionProvider(SuggestionProvider):
    """SuggestionProvider backed by a LiteLLM Router.

    Args:
        router: Configured Router, or None when no API keys are set.
        max_tokens: Completion token cap.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        router: Router | None,
        max_tokens: int = 400,
        temperature: float = 0.3,
    ) -> None:
        self._router = router
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def generate(self, context: SuggestionContext) -> ProviderReply:
        if self._router is None:
            raise ProviderUnavailableError("No LLM API keys configured")

        messages = build_messages(context)
        async with track_llm_call(MODEL_GROUP) as tracker:
            try:
                response = await self._router.acompletion(
                    model=MODEL_GROUP,
                    messages=messages,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                    metadata={"conversation_id": context.conversation_id},
                )
            except _TRANSIENT_PROVIDER_ERRORS as exc:
                raise TransientError(f"{type(exc).__name__}: {exc}") from exc

            tracker["model"] = response.model
            usage = getattr(response, "usage", None)
            if usage:
                tracker["prompt_tokens"] = usage.prompt_tokens
                tracker["completion_tokens"] = usage.completion_tokens

        return parse_reply(response.choices[0].message.content, model=response.model)
