"""Retry executor -- the single timeout + jittered backoff wrapper for outbound calls.

Every call to an external system (CRM, LLM provider, event bus) goes through
``RetryExecutor.execute()``. The executor:

- Bounds each attempt with ``asyncio.wait_for`` (the in-flight call is
  cancelled when the timeout fires and the attempt counts as transient).
- Retries only transient failures (see ``classify_exception``); validation
  and auth failures surface after the first attempt.
- Waits ``base * multiplier ** (n - 1) + uniform(0, jitter)`` between
  attempts via tenacity's ``wait_exponential_jitter``. The sleep suspends
  only the calling task.
- Emits one structured log entry per attempt.
- Never raises for operation failures: a ``RetryResult`` carries either the
  value or the last error plus the attempt count, and the caller decides
  whether the failure is fatal or degradable. ``asyncio.CancelledError`` is
  always propagated.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from src.dealsmart.core.errors import FailureKind, classify_exception, is_transient
from src.dealsmart.core.monitoring import retry_attempts_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Timeout and backoff parameters for one class of outbound call."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=10.0, ge=5, le=30)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_seconds: float = Field(default=0.25, ge=0)
    max_delay_seconds: float = Field(default=30.0, gt=0)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation.

    Attributes:
        ok: True when some attempt succeeded.
        value: Return value of the successful attempt.
        error: Last exception when every attempt failed.
        attempts: Number of attempts made.
        failure_kind: Transient (retries exhausted) or terminal (not retryable).
        elapsed_ms: Wall-clock time across all attempts, sleeps included.
    """

    ok: bool
    attempts: int
    value: T | None = None
    error: BaseException | None = None
    failure_kind: FailureKind | None = None
    elapsed_ms: float = 0.0

    @property
    def last_error(self) -> str | None:
        """Readable form of the last error, for audit records."""
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"

    def unwrap(self) -> T:
        """Return the value or re-raise the last error."""
        if not self.ok:
            if self.error is None:
                raise RuntimeError("Failed RetryResult carries no error")
            raise self.error
        return self.value  # type: ignore[return-value]


class RetryExecutor:
    """Runs async operations under a RetryPolicy.

    Args:
        default_policy: Policy used when ``execute`` is called without one.
        sleep: Awaitable sleep function. Injected in tests to observe the
            backoff schedule without waiting.
    """

    def __init__(
        self,
        default_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._default_policy = default_policy or RetryPolicy()
        self._sleep = sleep

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        *,
        name: str = "operation",
        log_context: dict[str, Any] | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails terminally, or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per
                attempt (a coroutine function or lambda, not a coroutine).
            policy: Optional override of the default policy.
            name: Operation name for logs and metrics.
            log_context: Extra key/values bound to every attempt log entry.

        Returns:
            RetryResult with the value or the terminal failure.
        """
        policy = policy or self._default_policy
        context = log_context or {}
        started = time.monotonic()
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential_jitter(
                initial=policy.base_delay_seconds,
                exp_base=policy.backoff_multiplier,
                jitter=policy.jitter_seconds,
                max=policy.max_delay_seconds,
            ),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = await self._run_attempt(
                        operation, policy, name, attempts, context,
                    )
        except Exception as exc:
            elapsed_ms = round((time.monotonic() - started) * 1000, 2)
            kind = classify_exception(exc)
            logger.warning(
                "retry.exhausted" if kind is FailureKind.TRANSIENT else "retry.terminal_failure",
                operation=name,
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
                elapsed_ms=elapsed_ms,
                **context,
            )
            return RetryResult(
                ok=False,
                attempts=attempts,
                error=exc,
                failure_kind=kind,
                elapsed_ms=elapsed_ms,
            )

        return RetryResult(
            ok=True,
            attempts=attempts,
            value=value,
            elapsed_ms=round((time.monotonic() - started) * 1000, 2),
        )

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        name: str,
        attempt_number: int,
        context: dict[str, Any],
    ) -> T:
        """Run a single timed attempt and log its outcome."""
        attempt_started = time.monotonic()
        try:
            result = await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
        except asyncio.CancelledError:
            logger.info(
                "retry.attempt_cancelled",
                operation=name,
                attempt=attempt_number,
                **context,
            )
            raise
        except Exception as exc:
            kind = classify_exception(exc)
            retry_attempts_total.labels(operation=name, outcome=kind.value).inc()
            logger.info(
                "retry.attempt_failed",
                operation=name,
                attempt=attempt_number,
                max_attempts=policy.max_attempts,
                failure_kind=kind.value,
                will_retry=kind is FailureKind.TRANSIENT
                and attempt_number < policy.max_attempts,
                error=str(exc) or type(exc).__name__,
                duration_ms=round((time.monotonic() - attempt_started) * 1000, 2),
                **context,
            )
            raise

        retry_attempts_total.labels(operation=name, outcome="success").inc()
        logger.info(
            "retry.attempt_succeeded",
            operation=name,
            attempt=attempt_number,
            duration_ms=round((time.monotonic() - attempt_started) * 1000, 2),
            **context,
        )
        return result
