"""Sync orchestration: domain event fan-out and maintenance sweeps.

Exports:
    SyncOrchestrator: Event -> CRM / AI fan-out.
    OrchestratorPublisher: In-process EventPublisher.
    FanOutReport, TargetOutcome: Per-target results.
    build_maintenance_tasks, start_maintenance_tasks: Reconciliation loops.
"""

from __future__ import annotations

from src.dealsmart.orchestration.orchestrator import (
    FanOutReport,
    OrchestratorPublisher,
    SyncOrchestrator,
    TargetOutcome,
)
from src.dealsmart.orchestration.scheduler import (
    build_maintenance_tasks,
    start_maintenance_tasks,
)

__all__ = [
    "FanOutReport",
    "OrchestratorPublisher",
    "SyncOrchestrator",
    "TargetOutcome",
    "build_maintenance_tasks",
    "start_maintenance_tasks",
]
