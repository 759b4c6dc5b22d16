"""AI suggestion engine.

``suggest(context)`` calls the provider through the RetryExecutor, then
validates the draft against the context (see ``validation``). Provider
failures of any kind -- timeout, rate limit, outage, malformed output --
degrade to ``Suggestion.unavailable()``; the engine never raises for them
and never fabricates text.
"""

from __future__ import annotations

import structlog

from src.dealsmart.assistance.provider import SuggestionProvider
from src.dealsmart.assistance.schemas import Suggestion, SuggestionContext
from src.dealsmart.assistance.validation import validate_reply
from src.dealsmart.core.monitoring import suggestions_total
from src.dealsmart.core.retry import RetryExecutor, RetryPolicy

logger = structlog.get_logger(__name__)

# Upper bound on confidence for drafts that need clarification
CLARIFICATION_CONFIDENCE_CAP = 0.3


class SuggestionEngine:
    """Bounded, context-only draft generation.

    Args:
        provider: AI provider boundary.
        executor: RetryExecutor wrapping provider calls.
        policy: Optional RetryPolicy override for provider calls.
    """

    def __init__(
        self,
        provider: SuggestionProvider,
        executor: RetryExecutor,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._policy = policy

    async def suggest(self, context: SuggestionContext) -> Suggestion:
        result = await self._executor.execute(
            lambda: self._provider.generate(context),
            self._policy,
            name="ai.suggest",
            log_context={"conversation_id": context.conversation_id},
        )
        if not result.ok:
            suggestions_total.labels(result="unavailable").inc()
            logger.warning(
                "ai_suggestion.unavailable",
                conversation_id=context.conversation_id,
                attempts=result.attempts,
                error=result.last_error,
            )
            return Suggestion.unavailable(error=result.last_error)

        reply = result.value
        outcome = validate_reply(reply.text, context)

        confidence = reply.confidence
        if outcome.needs_clarification:
            cap = CLARIFICATION_CONFIDENCE_CAP
            confidence = cap if confidence is None else min(confidence, cap)

        suggestions_total.labels(
            result="needs_clarification" if outcome.needs_clarification else "ok"
        ).inc()
        logger.info(
            "ai_suggestion.generated",
            conversation_id=context.conversation_id,
            needs_clarification=outcome.needs_clarification,
            flags=[f.value for f in outcome.flags],
            untraceable_tokens=outcome.untraceable_tokens,
            rewritten=outcome.rewritten,
            model=reply.model,
        )
        return Suggestion(
            available=True,
            text=outcome.text,
            confidence=confidence,
            needs_clarification=outcome.needs_clarification,
            flags=outcome.flags,
        )
