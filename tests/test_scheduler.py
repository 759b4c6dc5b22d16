"""Tests for the maintenance task functions and loop runner."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from src.dealsmart.audit.schemas import SyncOutcome
from src.dealsmart.crm.schemas import SyncKind, SyncResult
from src.dealsmart.orchestration.scheduler import (
    build_maintenance_tasks,
    start_maintenance_tasks,
)


def _result(outcome: SyncOutcome) -> SyncResult:
    return SyncResult(system="hubspot", kind=SyncKind.CONTACT, entity_id="u", outcome=outcome)


class TestMaintenanceTasks:
    """Task functions called directly."""

    async def test_reconcile_counts_recovered(self):
        crm = MagicMock()
        crm.reconcile = AsyncMock(
            return_value=[_result(SyncOutcome.SUCCESS), _result(SyncOutcome.FAILED)]
        )
        tasks = build_maintenance_tasks(crm, None, AsyncMock(), timedelta(days=30))

        assert await tasks["reconcile_crm"]() == 1

    async def test_missing_components_are_noops(self):
        tasks = build_maintenance_tasks(None, None, AsyncMock(), timedelta(days=30))

        assert await tasks["reconcile_crm"]() == 0
        assert await tasks["reemit_billing_events"]() == 0

    async def test_reemit_billing(self):
        billing = MagicMock()
        billing.reemit_failed = AsyncMock(return_value=2)
        tasks = build_maintenance_tasks(None, billing, AsyncMock(), timedelta(days=30))

        assert await tasks["reemit_billing_events"]() == 2

    async def test_prune_uses_retention(self):
        ledger = AsyncMock()
        ledger.prune = AsyncMock(return_value=7)
        tasks = build_maintenance_tasks(None, None, ledger, timedelta(days=30))

        assert await tasks["prune_ledger"]() == 7
        ledger.prune.assert_awaited_once()

    async def test_errors_are_swallowed(self):
        crm = MagicMock()
        crm.reconcile = AsyncMock(side_effect=RuntimeError("db gone"))
        ledger = AsyncMock()
        ledger.prune = AsyncMock(side_effect=RuntimeError("db gone"))
        tasks = build_maintenance_tasks(crm, None, ledger, timedelta(days=30))

        assert await tasks["reconcile_crm"]() == 0
        assert await tasks["prune_ledger"]() == 0


async def test_loops_run_and_cancel():
    calls = 0

    async def tick() -> int:
        nonlocal calls
        calls += 1
        return 0

    loops = start_maintenance_tasks({"tick": tick}, intervals={"tick": 0})
    await asyncio.sleep(0.05)
    for task in loops:
        task.cancel()
    await asyncio.gather(*loops, return_exceptions=True)

    assert calls > 0
    assert all(task.done() for task in loops)
