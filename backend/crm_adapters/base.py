"""
Abstract CRM Adapter base class.
All CRM-specific details live behind this abstraction; the sync orchestrators
only ever see {"id": ..., "properties": {...}} records.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class CRMPage:
    """One page of records plus the cursor for the next one (None = last page)."""
    records: list[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None


class CRMAdapter(ABC):
    """One implementation per CRM. Capability interface used by the sync engine."""

    @abstractmethod
    async def test_connection(self) -> dict:
        """Verify CRM credentials are valid. Returns {"ok": bool, "message": str}."""

    @abstractmethod
    def supported_entities(self) -> list[str]:
        """Return the entity types this adapter can sync (e.g., ['contact', 'company', 'deal'])."""

    @abstractmethod
    async def list_page(
        self,
        entity_type: str,
        page_size: int = 100,
        cursor: Optional[str] = None,
        properties: Optional[list[str]] = None,
    ) -> CRMPage:
        """
        Fetch one page of records.

        Args:
            entity_type: 'contact' | 'company' | 'deal'
            page_size: Records per page (adapters may clamp)
            cursor: Opaque cursor from the previous page, None for the first page
            properties: Property names to include on each record
        """

    @abstractmethod
    async def search_by_property(self, entity_type: str, property_name: str, value: Any) -> Optional[dict]:
        """Exact-match lookup. Returns the first matching record or None."""

    @abstractmethod
    async def create(self, entity_type: str, properties: dict) -> dict:
        """Create a record. The returned record always carries its new 'id'."""

    @abstractmethod
    async def update(self, entity_type: str, record_id: str, properties: dict) -> dict:
        """Update a record's properties."""
