"""Maintenance loops: reconciliation sweeps and ledger pruning.

Task functions are built by ``build_maintenance_tasks`` and decoupled from
the loop runner so tests can call them directly:

1. reconcile_crm: Retry CRM syncs whose latest attempt failed
2. reemit_billing_events: Re-publish billing domain events that failed to emit
3. prune_ledger: Drop idempotency entries older than the retention window

Each task logs its result and swallows its own errors so one failing sweep
never stops the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog

from src.dealsmart.billing.processor import BillingWebhookProcessor
from src.dealsmart.core.clock import utcnow
from src.dealsmart.crm.sync import CRMSyncAdapter
from src.dealsmart.idempotency.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)

MaintenanceTask = Callable[[], Awaitable[int]]

# Interval configuration (seconds); reconcile interval comes from settings
TASK_INTERVALS = {
    "reconcile_crm": 15 * 60,
    "reemit_billing_events": 5 * 60,
    "prune_ledger": 60 * 60,
}


def build_maintenance_tasks(
    crm: CRMSyncAdapter | None,
    billing: BillingWebhookProcessor | None,
    ledger: IdempotencyLedger,
    retention: timedelta,
) -> dict[str, MaintenanceTask]:
    """Return a dict mapping task name to async callable."""

    async def reconcile_crm_task() -> int:
        if crm is None:
            return 0
        try:
            results = await crm.reconcile()
            recovered = sum(1 for r in results if r.ok)
            logger.info("scheduler.crm_reconciled", retried=len(results), recovered=recovered)
            return recovered
        except Exception:
            logger.warning("scheduler.crm_reconcile_failed", exc_info=True)
            return 0

    async def reemit_billing_events_task() -> int:
        if billing is None:
            return 0
        try:
            count = await billing.reemit_failed()
            logger.info("scheduler.billing_events_reemitted", count=count)
            return count
        except Exception:
            logger.warning("scheduler.billing_reemit_failed", exc_info=True)
            return 0

    async def prune_ledger_task() -> int:
        try:
            count = await ledger.prune(utcnow() - retention)
            logger.info("scheduler.ledger_pruned", count=count)
            return count
        except Exception:
            logger.warning("scheduler.ledger_prune_failed", exc_info=True)
            return 0

    return {
        "reconcile_crm": reconcile_crm_task,
        "reemit_billing_events": reemit_billing_events_task,
        "prune_ledger": prune_ledger_task,
    }


def start_maintenance_tasks(
    tasks: dict[str, MaintenanceTask],
    intervals: dict[str, int] | None = None,
) -> list[asyncio.Task]:
    """Start each task on its own asyncio loop.

    Returns:
        The loop tasks; cancel them on shutdown.
    """
    intervals = {**TASK_INTERVALS, **(intervals or {})}
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():
        interval = intervals.get(task_name, 3600)

        async def _loop(fn=task_fn, name=task_name, sleep=interval) -> None:
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        background_tasks.append(asyncio.create_task(_loop(), name=f"maintenance_{task_name}"))

    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
    return background_tasks
