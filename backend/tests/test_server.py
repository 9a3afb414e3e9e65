"""
API Tests
=========
FastAPI routes with the store, the Sheets client and the CRM builder swapped
for in-memory fakes via app.dependency_overrides.
"""

import pytest
import sys
import os
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

import server
import sync_engine
from google_sheets_service import SheetsServiceError
from conftest import FakeCRM, FakeSheets, FakeStore

HEADER = ["Email", "First Name", "Last Name"]
KEY = ("sheet-1", "Contacts")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sheets():
    return FakeSheets()


@pytest.fixture
def crm():
    return FakeCRM({"contact": [{"id": "1", "properties": {"email": "a@x.com", "firstname": "Ada"}}]})


@pytest.fixture
def client(store, sheets, crm):
    async def _build_crm(_store, _config_id):
        return crm

    server.app.dependency_overrides[server.get_store] = lambda: store
    server.app.dependency_overrides[server.get_sheets_client] = lambda: sheets
    server.app.dependency_overrides[server.get_crm_builder] = lambda: _build_crm
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()
    sync_engine._config_locks.clear()


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSyncConfigs:

    def test_get_config(self, client, store, make_config):
        store.configs["cfg-1"] = make_config()

        response = client.get("/api/sync-configs/cfg-1")

        assert response.status_code == 200
        data = response.json()
        assert data["config"]["entity_type"] == "contact"
        assert data["loop_active"] is False
        assert data["running"] is False

    def test_unknown_config(self, client):
        assert client.get("/api/sync-configs/nope").status_code == 404

    def test_run_in_background(self, client, store, make_config, monkeypatch):
        store.configs["cfg-1"] = make_config()
        calls = []

        async def _trigger(s, config_id):
            calls.append(config_id)

        monkeypatch.setattr(server, "trigger_sync_background", _trigger)

        response = client.post("/api/sync-configs/cfg-1/run")

        assert response.status_code == 200
        assert response.json() == {"status": "started", "config_id": "cfg-1"}
        assert calls == ["cfg-1"]

    def test_run_and_wait(self, client, store, sheets, make_config):
        store.configs["cfg-1"] = make_config()

        response = client.post("/api/sync-configs/cfg-1/run", params={"wait": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["records_created"] == 1
        assert data["direction"] == "crm_to_sheet"
        assert sheets.grids[KEY][1] == ["1", "a@x.com", "Ada", ""]

    def test_missing_column_is_bad_request(self, client, store, sheets, make_config):
        store.configs["cfg-1"] = make_config(direction="sheet_to_crm")
        sheets.grids[KEY] = [["Email"], ["a@x.com"]]

        response = client.post("/api/sync-configs/cfg-1/run", params={"wait": "true"})

        assert response.status_code == 400
        assert "not found in sheet" in response.json()["detail"]

    def test_strict_row_validation_is_unprocessable(self, client, store, sheets, make_config):
        store.configs["cfg-1"] = make_config(direction="sheet_to_crm", skip_invalid=False)
        sheets.grids[KEY] = [HEADER, ["", "NoEmail", ""]]

        response = client.post("/api/sync-configs/cfg-1/run", params={"wait": "true"})

        assert response.status_code == 422
        assert response.json()["detail"] == "Row 2: Missing required fields: Email"

    def test_sheet_failure_is_bad_gateway(self, client, store, sheets, make_config):
        store.configs["cfg-1"] = make_config(direction="sheet_to_crm")
        sheets.read_sheet = AsyncMock(side_effect=SheetsServiceError("Access denied"))

        response = client.post("/api/sync-configs/cfg-1/run", params={"wait": "true"})

        assert response.status_code == 502

    def test_changes_preview(self, client, store, sheets, make_config):
        store.configs["cfg-1"] = make_config(direction="sheet_to_crm")
        sheets.grids[KEY] = [HEADER, ["a@x.com", "Ada", ""], ["b@x.com", "Bob", ""]]

        response = client.get("/api/sync-configs/cfg-1/changes")

        assert response.status_code == 200
        data = response.json()
        assert data["changes"] == [{"row": 2, "type": "new"}, {"row": 3, "type": "new"}]
        assert data["summary"] == {"new": 2}


class TestFieldMappingValidation:

    def test_valid_mappings(self, client):
        response = client.post("/api/field-mappings/validate", json={"field_mappings": [
            {"hubspot_property": "email", "sheet_column": "Email", "column_index": 0},
        ]})

        assert response.json() == {"valid": True, "errors": [], "valid_mappings": []}

    def test_bad_transform_config(self, client):
        response = client.post("/api/field-mappings/validate", json={"field_mappings": [
            {"hubspot_property": "name", "sheet_column": "Name", "column_index": 0,
             "transform_type": "CONCATENATE", "transform_config": {}},
        ]})

        data = response.json()
        assert data["valid"] is False
        assert data["errors"][0].startswith("Name: ")

    def test_resolves_columns_against_sheet(self, client, sheets):
        sheets.grids[KEY] = [["First Name", "Email"]]

        response = client.post("/api/field-mappings/validate", json={
            "spreadsheet_id": "sheet-1",
            "sheet_name": "Contacts",
            "field_mappings": [
                {"hubspot_property": "email", "sheet_column": "Email", "column_index": 0},
                {"hubspot_property": "phone", "sheet_column": "Phone", "column_index": 1},
            ],
        })

        data = response.json()
        assert data["valid"] is False
        assert data["errors"] == ['Column "Phone" not found in sheet']
        assert data["valid_mappings"][0]["column_index"] == 1

    def test_empty_list_rejected(self, client):
        assert client.post("/api/field-mappings/validate", json={"field_mappings": []}).status_code == 422


class TestSheets:

    def test_list(self, client, sheets, monkeypatch):
        monkeypatch.setattr(server, "get_service_account_email", lambda: "sync@example.iam.gserviceaccount.com")
        sheets.grids[KEY] = [HEADER]

        data = client.get("/api/sheets").json()

        assert data["spreadsheets"][0]["id"] == "sheet-1"
        assert data["service_account_email"] == "sync@example.iam.gserviceaccount.com"

    def test_details_with_sample(self, client, sheets):
        sheets.grids[KEY] = [HEADER] + [[f"{i}@x.com", "", ""] for i in range(7)]

        data = client.get("/api/sheets/sheet-1", params={"sheet_name": "Contacts"}).json()

        assert data["headers"] == HEADER
        assert data["row_count"] == 7
        assert len(data["sample_data"]) == 5

    def test_unknown_spreadsheet(self, client):
        assert client.get("/api/sheets/missing").status_code == 502
