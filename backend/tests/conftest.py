"""
Shared in-memory fakes for the CRM, the spreadsheet and the state store.
No HubSpot, Google or Supabase calls are made anywhere in the suite.
"""

import os
import re
import sys
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from crm_adapters.base import CRMAdapter, CRMPage
from google_sheets_service import SheetsServiceError, SpreadsheetClient
from sheet_sync.models import RowFingerprint, SheetSnapshot, SyncConfig
from sync_store import SyncStateStore

_RANGE_RE = re.compile(r"^'((?:[^']|'')*)'!([A-Z]+)(\d+)$")


class FakeCRM(CRMAdapter):
    """Records live in self.records[entity_type] as {"id", "properties"}."""

    def __init__(self, records=None):
        self.records = {k: list(v) for k, v in (records or {}).items()}
        self.list_calls = []
        self.created = []
        self.updated = []
        self.fail_on_create = None
        self._next_id = 1000

    async def test_connection(self):
        return {"ok": True, "message": "Connection successful!"}

    def supported_entities(self):
        return ["contact", "company", "deal"]

    async def list_page(self, entity_type, page_size=100, cursor=None, properties=None):
        self.list_calls.append({"entity_type": entity_type, "cursor": cursor, "properties": properties})
        records = self.records.get(entity_type, [])
        start = int(cursor or 0)
        end = start + page_size
        next_cursor = str(end) if end < len(records) else None
        return CRMPage(records=records[start:end], next_cursor=next_cursor)

    async def search_by_property(self, entity_type, property_name, value):
        for record in self.records.get(entity_type, []):
            if record["properties"].get(property_name) == value:
                return record
        return None

    async def create(self, entity_type, properties):
        if self.fail_on_create and self.fail_on_create(properties):
            raise RuntimeError("CRM rejected the record")
        self._next_id += 1
        record = {"id": str(self._next_id), "properties": dict(properties)}
        self.records.setdefault(entity_type, []).append(record)
        self.created.append(record)
        return record

    async def update(self, entity_type, record_id, properties):
        self.updated.append({"id": record_id, "properties": dict(properties)})
        for record in self.records.get(entity_type, []):
            if record["id"] == record_id:
                record["properties"].update(properties)
                return record
        return {"id": record_id, "properties": dict(properties)}


class FakeSheets(SpreadsheetClient):
    """Worksheets live in self.grids[(spreadsheet_id, sheet_name)] including the header row."""

    def __init__(self, grids=None):
        self.grids = {k: [list(r) for r in v] for k, v in (grids or {}).items()}
        self.writes = []
        self.appends = []
        self.clears = []
        self.batch_updates = []

    def _grid(self, spreadsheet_id, sheet_name):
        return self.grids.setdefault((spreadsheet_id, sheet_name), [])

    async def read_sheet(self, spreadsheet_id, sheet_name):
        grid = self._grid(spreadsheet_id, sheet_name)
        return SheetSnapshot(
            spreadsheet_id=spreadsheet_id,
            sheet_name=sheet_name,
            headers=[str(h) for h in grid[0]] if grid else [],
            rows=[list(r) for r in grid[1:]],
            sheet_id=0,
        )

    async def write_sheet(self, spreadsheet_id, sheet_name, grid, start_cell="A1"):
        self.writes.append({"sheet": sheet_name, "grid": grid, "start_cell": start_cell})
        target = self._grid(spreadsheet_id, sheet_name)
        first = int(re.sub(r"[A-Z]", "", start_cell)) - 1
        for offset, row in enumerate(grid):
            while len(target) <= first + offset:
                target.append([])
            target[first + offset] = list(row)
        return sum(len(r) for r in grid)

    async def append_rows(self, spreadsheet_id, sheet_name, rows):
        self.appends.append({"sheet": sheet_name, "rows": rows})
        self._grid(spreadsheet_id, sheet_name).extend(list(r) for r in rows)
        return len(rows)

    async def clear_range(self, spreadsheet_id, sheet_name, cell_range):
        self.clears.append({"sheet": sheet_name, "range": cell_range})
        self.grids[(spreadsheet_id, sheet_name)] = []

    async def batch_update_cells(self, spreadsheet_id, updates):
        self.batch_updates.append(updates)
        cells = 0
        for update in updates:
            match = _RANGE_RE.match(update["range"])
            if not match:
                raise SheetsServiceError(f"Bad range {update['range']}")
            sheet_name = match.group(1).replace("''", "'")
            row_index = int(match.group(3)) - 1
            target = self._grid(spreadsheet_id, sheet_name)
            for offset, row in enumerate(update["values"]):
                target[row_index + offset] = list(row)
                cells += len(row)
        return cells

    async def list_spreadsheets(self, page_size=100):
        ids = sorted({sid for sid, _ in self.grids})
        return [{"id": sid, "name": f"Sheet {sid}", "modified_time": None} for sid in ids][:page_size]

    async def get_metadata(self, spreadsheet_id):
        names = [name for sid, name in self.grids if sid == spreadsheet_id]
        if not names:
            raise SheetsServiceError(f"Spreadsheet {spreadsheet_id} not found")
        return {
            "spreadsheet_id": spreadsheet_id,
            "title": f"Sheet {spreadsheet_id}",
            "sheets": [{"sheet_id": i, "title": n, "row_count": 1000, "column_count": 26} for i, n in enumerate(names)],
        }


class FakeStore(SyncStateStore):
    """Jobs, logs and fingerprints kept in plain dicts/lists."""

    def __init__(self):
        self.jobs = {}
        self.logs = []
        self.fingerprints = {}
        self.configs = {}
        self.credentials = {}
        self.deleted_before = []

    async def upsert_fingerprint(self, spreadsheet_id, record_id, row_number, hash, timestamp=None):
        self.fingerprints[(spreadsheet_id, str(record_id))] = RowFingerprint(
            spreadsheet_id=spreadsheet_id,
            record_id=str(record_id),
            row_number=row_number,
            hash=hash,
            last_synced_at=timestamp,
        )

    async def list_fingerprints(self, spreadsheet_id):
        return [fp for (sid, _), fp in self.fingerprints.items() if sid == spreadsheet_id]

    async def create_job(self, config_id):
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs[job_id] = {"config_id": config_id, "status": "IN_PROGRESS"}
        return job_id

    async def update_job(self, job_id, **fields):
        self.jobs[job_id].update(fields)

    async def append_log(self, job_id, operation, entity_type, entity_id, status, message=None):
        self.logs.append({
            "job_id": job_id,
            "operation": operation,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "status": status,
            "message": message,
        })

    async def get_config(self, config_id):
        return self.configs.get(config_id)

    async def list_active_configs(self):
        return [c for c in self.configs.values() if c.is_active]

    async def get_crm_credentials(self, config_id):
        return self.credentials.get(config_id)

    async def delete_logs_before(self, cutoff):
        self.deleted_before.append(("logs", cutoff))
        return 3

    async def delete_jobs_before(self, cutoff):
        self.deleted_before.append(("jobs", cutoff))
        return 1

    def fingerprint_rows(self, spreadsheet_id):
        """{record_id: row_number} for assertions."""
        return {fp.record_id: fp.row_number for fp in self.fingerprints.values() if fp.spreadsheet_id == spreadsheet_id}


CONTACT_MAPPINGS = [
    {"hubspot_property": "email", "sheet_column": "Email", "column_index": 0, "is_required": True},
    {"hubspot_property": "firstname", "sheet_column": "First Name", "column_index": 1},
    {"hubspot_property": "lastname", "sheet_column": "Last Name", "column_index": 2},
]


@pytest.fixture
def make_config():
    """Factory: make_config(direction=..., **overrides) -> SyncConfig."""
    def _make(**overrides):
        data = {
            "id": "cfg-1",
            "entity_type": "contact",
            "direction": "crm_to_sheet",
            "spreadsheet_id": "sheet-1",
            "sheet_name": "Contacts",
            "field_mappings": CONTACT_MAPPINGS,
        }
        if overrides.get("direction") == "sheet_to_crm":
            data["identifier_column"] = "Email"
        data.update(overrides)
        return SyncConfig.model_validate(data)
    return _make


@pytest.fixture
def fake_crm():
    return FakeCRM()


@pytest.fixture
def fake_sheets():
    return FakeSheets()


@pytest.fixture
def fake_store():
    return FakeStore()

