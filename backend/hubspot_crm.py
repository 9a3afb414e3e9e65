"""
HubSpot CRM API client.
Generic CRM v3 object access (list / search / create / update) over httpx,
shared by every entity type the sync engine handles.
"""

import httpx
import logging
import asyncio
import time
import os
from typing import Optional, Dict, Any, List
from collections import defaultdict

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = os.environ.get("HUBSPOT_API_BASE", "https://api.hubapi.com")
HUBSPOT_TIMEOUT = 30.0
HUBSPOT_MAX_REQUESTS_PER_SECOND = 5
HUBSPOT_RATE_LIMIT_WINDOW = 1.0

# CRM v3 hard limit for list/search page size
HUBSPOT_MAX_PAGE_SIZE = 100


class HubSpotRateLimiter:
    """Rate limiter for HubSpot API calls."""

    def __init__(self, max_requests: int = HUBSPOT_MAX_REQUESTS_PER_SECOND, window: float = HUBSPOT_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str = "default"):
        async with self._lock:
            now = time.time()
            self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            if len(self._requests[key]) >= self.max_requests:
                oldest = min(self._requests[key])
                wait_time = self.window - (now - oldest)
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            self._requests[key].append(now)


_hubspot_rate_limiter = HubSpotRateLimiter()


class HubSpotAPIError(Exception):
    """Raised for any non-2xx HubSpot response or transport failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HubSpotCRM:
    """Client for the HubSpot CRM v3 objects API."""

    def __init__(self, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self._transport = transport

    async def _call(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """Make authenticated API call to HubSpot."""
        await _hubspot_rate_limiter.acquire()

        url = f"{HUBSPOT_API_BASE}{path}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=HUBSPOT_TIMEOUT, transport=self._transport) as client:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method.upper() == "POST":
                    response = await client.post(url, headers=headers, json=data)
                elif method.upper() == "PATCH":
                    response = await client.patch(url, headers=headers, json=data)
                else:
                    raise HubSpotAPIError(f"Unsupported method: {method}")

                if response.status_code == 401:
                    raise HubSpotAPIError("Authentication failed. Token may be expired", 401)
                if response.status_code == 429:
                    raise HubSpotAPIError("Rate limit exceeded", 429)
                if response.status_code >= 400:
                    error_body = response.text[:500]
                    logger.error(f"HubSpot API error {response.status_code}: {error_body}")
                    raise HubSpotAPIError(f"API error: {response.status_code}", response.status_code)

                if response.status_code == 204:
                    return {}
                return response.json()

        except httpx.TimeoutException:
            raise HubSpotAPIError("Connection timeout. Please check your HubSpot connection")
        except httpx.RequestError as e:
            raise HubSpotAPIError(f"Connection error: {str(e)}")

    # ==================== Connection Test ====================

    async def test_connection(self) -> Dict[str, Any]:
        """Test the connection by fetching a single contact."""
        try:
            await self._call("GET", "/crm/v3/objects/contacts", params={"limit": 1})
            return {"ok": True, "message": "Connection successful!"}
        except HubSpotAPIError as e:
            return {"ok": False, "message": str(e)}

    # ==================== Objects ====================

    async def list_objects(
        self,
        object_type: str,
        limit: int = HUBSPOT_MAX_PAGE_SIZE,
        after: Optional[str] = None,
        properties: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """One page of objects. Returns the raw {results, paging} payload."""
        params: Dict[str, Any] = {"limit": min(limit, HUBSPOT_MAX_PAGE_SIZE), "archived": "false"}
        if after:
            params["after"] = after
        if properties:
            params["properties"] = ",".join(properties)
        return await self._call("GET", f"/crm/v3/objects/{object_type}", params=params)

    async def search_objects(
        self,
        object_type: str,
        filters: List[Dict[str, Any]],
        properties: Optional[List[str]] = None,
        limit: int = 1,
    ) -> List[Dict]:
        """Search with a single AND-ed filter group."""
        payload: Dict[str, Any] = {
            "filterGroups": [{"filters": filters}],
            "limit": limit,
        }
        if properties:
            payload["properties"] = properties
        result = await self._call("POST", f"/crm/v3/objects/{object_type}/search", data=payload)
        return result.get("results", [])

    async def create_object(self, object_type: str, properties: Dict[str, Any]) -> Dict:
        result = await self._call("POST", f"/crm/v3/objects/{object_type}", data={
            "properties": properties,
        })
        logger.info(f"Created HubSpot {object_type} record: {result.get('id', '')}")
        return result

    async def update_object(self, object_type: str, object_id: str, properties: Dict[str, Any]) -> Dict:
        result = await self._call("PATCH", f"/crm/v3/objects/{object_type}/{object_id}", data={
            "properties": properties,
        })
        logger.info(f"Updated HubSpot {object_type} record: {object_id}")
        return result
