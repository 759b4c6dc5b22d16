"""Append-only journal of outbound sync attempts.

Exports:
    SyncAttemptRepository: Record and query attempts.
    SyncAttemptCreate, SyncAttemptRead: Schemas.
    SyncOutcome: success / failed / skipped.
"""

from __future__ import annotations

from src.dealsmart.audit.repository import SyncAttemptRepository
from src.dealsmart.audit.schemas import SyncAttemptCreate, SyncAttemptRead, SyncOutcome

__all__ = [
    "SyncAttemptCreate",
    "SyncAttemptRead",
    "SyncAttemptRepository",
    "SyncOutcome",
]
