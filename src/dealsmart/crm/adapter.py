"""CRM client abstract base class -- the provider boundary used by CRMSyncAdapter.

Every call must be safe to repeat with identical data: upserts are keyed by
email (contacts), subscription id (deals) and (customer id, event id)
(activities).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.dealsmart.crm.schemas import ActivityPayload, ContactPayload, DealPayload


class CRMClient(ABC):
    """Abstract interface for CRM provider operations.

    Methods:
        upsert_contact: Create or update a contact, return external ID.
        upsert_deal: Create or update a deal, return external ID.
        append_activity: Add a timeline entry once, return external ID.
    """

    @abstractmethod
    async def upsert_contact(self, contact: ContactPayload) -> str:
        ...

    @abstractmethod
    async def upsert_deal(self, deal: DealPayload) -> str:
        ...

    @abstractmethod
    async def append_activity(self, activity: ActivityPayload) -> str:
        ...

    async def aclose(self) -> None:
        """Release transport resources. Default no-op."""
        return None
