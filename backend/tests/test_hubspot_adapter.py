"""
HubSpot Adapter Tests
=====================
HubSpotCRM request shapes and error mapping (httpx.MockTransport, no network),
HubSpotAdapter normalization/pagination, and the adapter factory.
"""

import json
import pytest
import sys
import os
from unittest.mock import AsyncMock, patch

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import hubspot_crm
from crm_adapters import HubSpotAdapter, create_adapter
from hubspot_crm import HubSpotAPIError, HubSpotCRM, HubSpotRateLimiter


@pytest.fixture(autouse=True)
def no_rate_limit(monkeypatch):
    monkeypatch.setattr(hubspot_crm, "_hubspot_rate_limiter", HubSpotRateLimiter(max_requests=10000))


def _adapter(handler, requests=None):
    def _record(request):
        if requests is not None:
            requests.append(request)
        return handler(request)
    return HubSpotAdapter(HubSpotCRM("test-token", transport=httpx.MockTransport(_record)))


class TestListPage:

    @pytest.mark.asyncio
    async def test_request_shape_and_normalization(self):
        requests = []

        def handler(request):
            return httpx.Response(200, json={
                "results": [{"id": 1, "properties": {"email": "a@x.com"}, "archived": False}],
                "paging": {"next": {"after": "abc"}},
            })

        page = await _adapter(handler, requests).list_page(
            "contact", page_size=500, cursor="xyz", properties=["email", "firstname"]
        )

        request = requests[0]
        assert request.method == "GET"
        assert request.url.path == "/crm/v3/objects/contacts"
        assert request.url.params["limit"] == "100"
        assert request.url.params["after"] == "xyz"
        assert request.url.params["archived"] == "false"
        assert request.url.params["properties"] == "email,firstname"
        assert request.headers["Authorization"] == "Bearer test-token"

        assert page.records == [{"id": "1", "properties": {"email": "a@x.com"}}]
        assert page.next_cursor == "abc"

    @pytest.mark.asyncio
    async def test_last_page_has_no_cursor(self):
        page = await _adapter(lambda r: httpx.Response(200, json={"results": []})).list_page("deal")
        assert page.records == []
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_entity_maps_to_object_type(self):
        requests = []
        await _adapter(lambda r: httpx.Response(200, json={"results": []}), requests).list_page("company")
        assert requests[0].url.path == "/crm/v3/objects/companies"

    @pytest.mark.asyncio
    async def test_unsupported_entity(self):
        with pytest.raises(ValueError, match="Unsupported entity type"):
            await _adapter(lambda r: httpx.Response(200, json={})).list_page("ticket")


class TestSearchAndWrite:

    @pytest.mark.asyncio
    async def test_search_uses_eq_filter(self):
        requests = []

        def handler(request):
            return httpx.Response(200, json={"results": [{"id": "7", "properties": {"email": "a@x.com"}}]})

        record = await _adapter(handler, requests).search_by_property("contact", "email", "a@x.com")

        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/crm/v3/objects/contacts/search"
        assert body["filterGroups"] == [{"filters": [{"propertyName": "email", "operator": "EQ", "value": "a@x.com"}]}]
        assert body["limit"] == 1
        assert record == {"id": "7", "properties": {"email": "a@x.com"}}

    @pytest.mark.asyncio
    async def test_search_no_match(self):
        record = await _adapter(lambda r: httpx.Response(200, json={"results": []})).search_by_property(
            "contact", "email", "nobody@x.com"
        )
        assert record is None

    @pytest.mark.asyncio
    async def test_create_serializes_values(self):
        requests = []

        def handler(request):
            return httpx.Response(201, json={"id": "99", "properties": {"email": "a@x.com"}})

        record = await _adapter(handler, requests).create(
            "contact", {"email": "a@x.com", "hs_is_vip": True, "phone": None, "amount": 12.5}
        )

        body = json.loads(requests[0].content)
        assert requests[0].method == "POST"
        assert body == {"properties": {"email": "a@x.com", "hs_is_vip": "true", "phone": "", "amount": 12.5}}
        assert record["id"] == "99"

    @pytest.mark.asyncio
    async def test_update_patches_record(self):
        requests = []
        await _adapter(lambda r: httpx.Response(200, json={"id": "55"}), requests).update(
            "company", "55", {"name": "Acme"}
        )
        assert requests[0].method == "PATCH"
        assert requests[0].url.path == "/crm/v3/objects/companies/55"


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,message", [
        (401, "Authentication failed"),
        (429, "Rate limit exceeded"),
        (500, "API error: 500"),
    ])
    async def test_status_codes_raise(self, status, message):
        adapter = _adapter(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(HubSpotAPIError, match=message) as exc:
            await adapter.list_page("contact")
        assert exc.value.status_code == status

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(HubSpotAPIError, match="Connection error"):
            await _adapter(handler).list_page("contact")

    @pytest.mark.asyncio
    async def test_connection_check_reports_failure(self):
        result = await _adapter(lambda r: httpx.Response(401)).test_connection()
        assert result["ok"] is False


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_waits_when_window_is_full(self):
        limiter = HubSpotRateLimiter(max_requests=2, window=1.0)
        with patch.object(hubspot_crm.asyncio, "sleep", new=AsyncMock()) as sleep:
            await limiter.acquire()
            await limiter.acquire()
            sleep.assert_not_awaited()
            await limiter.acquire()
            sleep.assert_awaited_once()


class TestFactory:

    def test_creates_hubspot_adapter(self):
        adapter = create_adapter("hubspot", {"access_token": "tok"})
        assert isinstance(adapter, HubSpotAdapter)
        assert adapter.supported_entities() == ["contact", "company", "deal"]

    def test_missing_token(self):
        with pytest.raises(ValueError, match="not connected"):
            create_adapter("hubspot", {})

    def test_unsupported_crm(self):
        with pytest.raises(ValueError, match="Unsupported CRM type"):
            create_adapter("salesforce", {"access_token": "tok"})
