"""Async HTTP client for the HubSpot CRM v3/v4 REST API.

Provides HubSpotClient implementing CRMClient:
- Contacts: batch upsert with ``idProperty=email``
- Deals: batch upsert keyed by the unique custom property
  ``dealsmart_subscription_id``, associated with the contact when known
- Notes: batch upsert keyed by ``dealsmart_activity_key`` so a repeated
  activity append updates the same note

The client performs a single HTTP exchange per step and raises
``httpx.HTTPStatusError`` / ``httpx.TransportError`` on failure; retries and
timeouts belong to the RetryExecutor wrapping each call.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.dealsmart.crm.adapter import CRMClient
from src.dealsmart.crm.field_mapping import PROP_ACTIVITY_KEY, PROP_SUBSCRIPTION_ID
from src.dealsmart.crm.schemas import ActivityPayload, ContactPayload, DealPayload

logger = structlog.get_logger(__name__)

# HubSpot-defined association type ids
_NOTE_TO_CONTACT = 202
_DEAL_TO_CONTACT = 3


class HubSpotClient(CRMClient):
    """HubSpot private-app client.

    Args:
        access_token: Private app access token.
        base_url: API root (https://api.hubapi.com).
        timeout: Transport-level timeout in seconds.
        transport: Optional httpx transport (tests inject MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _batch_upsert(
        self, object_type: str, id_property: str, object_id: str, properties: dict[str, str]
    ) -> str:
        response = await self._client.post(
            f"/crm/v3/objects/{object_type}/batch/upsert",
            json={
                "inputs": [
                    {
                        "idProperty": id_property,
                        "id": object_id,
                        "properties": properties,
                    }
                ]
            },
        )
        response.raise_for_status()
        results: list[dict[str, Any]] = response.json().get("results", [])
        if not results:
            msg = f"HubSpot {object_type} upsert returned no results"
            raise ValueError(msg)
        return str(results[0]["id"])

    async def _find_contact_id(self, email: str) -> str | None:
        response = await self._client.get(
            f"/crm/v3/objects/contacts/{email}",
            params={"idProperty": "email"},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return str(response.json()["id"])

    async def _associate(
        self, from_type: str, from_id: str, to_type: str, to_id: str, type_id: int
    ) -> None:
        # PUT is idempotent: re-creating an existing association is a no-op
        response = await self._client.put(
            f"/crm/v4/objects/{from_type}/{from_id}/associations/{to_type}/{to_id}",
            json=[{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": type_id}],
        )
        response.raise_for_status()

    # ── CRMClient ───────────────────────────────────────────────────────────

    async def upsert_contact(self, contact: ContactPayload) -> str:
        contact_id = await self._batch_upsert(
            "contacts", "email", contact.email, contact.properties
        )
        logger.info("hubspot.contact_upserted", contact_id=contact_id)
        return contact_id

    async def upsert_deal(self, deal: DealPayload) -> str:
        deal_id = await self._batch_upsert(
            "deals", PROP_SUBSCRIPTION_ID, deal.subscription_id, deal.properties
        )
        if deal.contact_email:
            contact_id = await self._find_contact_id(deal.contact_email)
            if contact_id is not None:
                await self._associate("deals", deal_id, "contacts", contact_id, _DEAL_TO_CONTACT)
        logger.info(
            "hubspot.deal_upserted",
            deal_id=deal_id,
            subscription_id=deal.subscription_id,
            dealstage=deal.properties.get("dealstage"),
        )
        return deal_id

    async def append_activity(self, activity: ActivityPayload) -> str:
        properties = {
            PROP_ACTIVITY_KEY: activity.activity_key,
            "hs_note_body": activity.body,
            "hs_timestamp": activity.timestamp.isoformat(),
        }
        note_id = await self._batch_upsert(
            "notes", PROP_ACTIVITY_KEY, activity.activity_key, properties
        )
        if activity.contact_email:
            contact_id = await self._find_contact_id(activity.contact_email)
            if contact_id is not None:
                await self._associate("notes", note_id, "contacts", contact_id, _NOTE_TO_CONTACT)
        logger.info("hubspot.note_upserted", note_id=note_id, activity_key=activity.activity_key)
        return note_id
