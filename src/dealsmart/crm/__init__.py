"""CRM synchronization: pure field mapping, HubSpot client, sync adapter.

Exports:
    CRMSyncAdapter: Deduplicated, never-raising sync of contacts, deals and activity.
    CRMClient: Provider boundary ABC.
    HubSpotClient: httpx implementation of CRMClient.
    CustomerProfile, SubscriptionSnapshot, ActivityRecord: Domain inputs.
    SyncResult, SyncKind: Results.
"""

from __future__ import annotations

from src.dealsmart.crm.adapter import CRMClient
from src.dealsmart.crm.hubspot import HubSpotClient
from src.dealsmart.crm.schemas import (
    ActivityRecord,
    CustomerProfile,
    SubscriptionSnapshot,
    SyncKind,
    SyncResult,
)
from src.dealsmart.crm.sync import CRMSyncAdapter

__all__ = [
    "ActivityRecord",
    "CRMClient",
    "CRMSyncAdapter",
    "CustomerProfile",
    "HubSpotClient",
    "SubscriptionSnapshot",
    "SyncKind",
    "SyncResult",
]
