"""
HubSpot CRM Adapter.
Wraps HubSpotCRM with cursor pagination, exact-match search and record
normalization for the sheet sync engine.
"""

import logging
from typing import Any, Optional

from .base import CRMAdapter, CRMPage

logger = logging.getLogger(__name__)

# HubSpot CRM v3 max page size
HUBSPOT_PAGE_SIZE = 100

# Sync entity type → HubSpot object type
OBJECT_TYPES = {
    "contact": "contacts",
    "company": "companies",
    "deal": "deals",
}


class HubSpotAdapter(CRMAdapter):
    """Adapter for HubSpot CRM via a private-app or OAuth access token."""

    def __init__(self, client):
        """
        Args:
            client: HubSpotCRM instance (from hubspot_crm.py)
        """
        self.client = client

    async def test_connection(self) -> dict:
        return await self.client.test_connection()

    def supported_entities(self) -> list[str]:
        return list(OBJECT_TYPES)

    async def list_page(
        self,
        entity_type: str,
        page_size: int = HUBSPOT_PAGE_SIZE,
        cursor: Optional[str] = None,
        properties: Optional[list[str]] = None,
    ) -> CRMPage:
        object_type = self._entity_to_object(entity_type)
        result = await self.client.list_objects(
            object_type,
            limit=min(page_size, HUBSPOT_PAGE_SIZE),
            after=cursor,
            properties=properties,
        )
        records = [self.normalize(raw) for raw in result.get("results", [])]
        next_cursor = result.get("paging", {}).get("next", {}).get("after")
        return CRMPage(records=records, next_cursor=next_cursor or None)

    async def search_by_property(self, entity_type: str, property_name: str, value: Any) -> Optional[dict]:
        object_type = self._entity_to_object(entity_type)
        results = await self.client.search_objects(
            object_type,
            filters=[{
                "propertyName": property_name,
                "operator": "EQ",
                "value": self._to_hubspot_value(value),
            }],
            properties=[property_name],
            limit=1,
        )
        return self.normalize(results[0]) if results else None

    async def create(self, entity_type: str, properties: dict) -> dict:
        object_type = self._entity_to_object(entity_type)
        raw = await self.client.create_object(object_type, self._serialize(properties))
        return self.normalize(raw)

    async def update(self, entity_type: str, record_id: str, properties: dict) -> dict:
        object_type = self._entity_to_object(entity_type)
        raw = await self.client.update_object(object_type, record_id, self._serialize(properties))
        return self.normalize(raw)

    def normalize(self, raw: dict) -> dict:
        return {
            "id": str(raw.get("id", "")),
            "properties": raw.get("properties") or {},
        }

    def _entity_to_object(self, entity_type: str) -> str:
        object_type = OBJECT_TYPES.get(entity_type)
        if not object_type:
            raise ValueError(f"Unsupported entity type: {entity_type}")
        return object_type

    def _serialize(self, properties: dict) -> dict:
        return {k: self._to_hubspot_value(v) for k, v in properties.items()}

    def _to_hubspot_value(self, value: Any) -> Any:
        # HubSpot stores booleans as the strings "true"/"false"
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return ""
        return value
