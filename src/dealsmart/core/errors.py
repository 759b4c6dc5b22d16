"""Error taxonomy shared by every component.

Exceptions:
    DealSmartError: Common base class.
    ValidationError: Malformed input -- caller's fault, never retried.
    TransientError: Timeout / network / 5xx -- retried by the RetryExecutor.
    ConflictError: Operation not allowed in the current state.
    InvalidTransitionError: Disallowed conversation status edge.
    NotFoundError: Referenced entity does not exist.
    AuthError: Signature or credential failure -- rejected, never retried.

``classify_exception()`` maps arbitrary exceptions raised by provider
clients (asyncio timeouts, httpx transport and status errors) onto the
transient / terminal split the RetryExecutor needs.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx


class DealSmartError(Exception):
    """Base class for all domain errors."""

    retryable: bool = False


class ValidationError(DealSmartError):
    """Malformed input. Never retried."""


class TransientError(DealSmartError):
    """Temporary failure of an external call. Retried per policy."""

    retryable = True


class ConflictError(DealSmartError):
    """Operation conflicts with the current state of the entity."""


class InvalidTransitionError(ConflictError):
    """Requested status change is not a defined edge."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from '{current}' to '{requested}'")


class NotFoundError(DealSmartError):
    """Referenced entity does not exist."""


class AuthError(DealSmartError):
    """Authentication or signature failure."""


class FailureKind(str, Enum):
    """Classification of a failed attempt."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"


# Status codes the provider may succeed on when asked again
_RETRYABLE_STATUS = frozenset({408, 425, 429})


def classify_exception(exc: BaseException) -> FailureKind:
    """Decide whether a failed attempt may be retried.

    Transient: TransientError, timeouts, connection resets, httpx transport
    errors, and HTTP 408/425/429/5xx responses. Everything else is terminal
    (validation, auth, other 4xx, programming errors).
    """
    if isinstance(exc, DealSmartError):
        return FailureKind.TRANSIENT if exc.retryable else FailureKind.TERMINAL
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code >= 500 or code in _RETRYABLE_STATUS:
            return FailureKind.TRANSIENT
        return FailureKind.TERMINAL
    if isinstance(exc, httpx.TransportError):
        return FailureKind.TRANSIENT
    return FailureKind.TERMINAL


def is_transient(exc: BaseException) -> bool:
    """Predicate form of classify_exception (used as tenacity retry filter)."""
    return classify_exception(exc) is FailureKind.TRANSIENT
