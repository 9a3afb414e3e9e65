"""Google Sheets read+write service using gspread + service account.

SpreadsheetClient is the capability interface the sync engine depends on;
GoogleSheetsClient implements it over gspread. gspread is synchronous, so every
call runs in a worker thread via asyncio.to_thread() to keep the event loop free.
"""

import asyncio
import os
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any
from pathlib import Path

import gspread
from google.oauth2.service_account import Credentials

from sheet_sync.models import SheetSnapshot

logger = logging.getLogger(__name__)

# Scopes for Sheets API (read + write) and Drive (listing spreadsheets)
SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
]

VALUE_INPUT_OPTION = "USER_ENTERED"
# Read cells as the sheet displays them, the same strings USER_ENTERED writes
VALUE_RENDER_OPTION = "FORMATTED_VALUE"

# Module-level gspread client (lazy-initialized)
_gspread_client: Optional[gspread.Client] = None
_service_account_email: Optional[str] = None


class SheetsServiceError(Exception):
    """Raised when a Sheets API call fails or the service is not configured."""


def _load_credentials_info() -> Optional[Dict]:
    """Load service account credentials from env var or local file."""
    # Try environment variable first (production)
    creds_json = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON")
    if creds_json:
        try:
            return json.loads(creds_json)
        except json.JSONDecodeError:
            logger.error("GOOGLE_SERVICE_ACCOUNT_JSON env var is not valid JSON")
            return None

    # Fallback to local file (development)
    local_path = Path(__file__).parent / "credentials" / "google_service_account.json"
    if local_path.exists():
        with open(local_path) as f:
            return json.load(f)

    logger.warning("No Google service account credentials found")
    return None


def get_gspread_client() -> Optional[gspread.Client]:
    """Get or create an authenticated gspread client."""
    global _gspread_client

    if _gspread_client is not None:
        return _gspread_client

    creds_info = _load_credentials_info()
    if not creds_info:
        return None

    try:
        creds = Credentials.from_service_account_info(creds_info, scopes=SCOPES)
        _gspread_client = gspread.authorize(creds)
        logger.info("gspread client initialized with service account")
        return _gspread_client
    except Exception as e:
        logger.error(f"Failed to initialize gspread client: {e}")
        return None


def get_service_account_email() -> Optional[str]:
    """Return the service account email users must share their sheets with."""
    global _service_account_email

    if _service_account_email:
        return _service_account_email

    creds_info = _load_credentials_info()
    if creds_info:
        _service_account_email = creds_info.get("client_email")
        return _service_account_email

    return None


class SpreadsheetClient(ABC):
    """Capability interface for spreadsheet storage used by the sync engine."""

    @abstractmethod
    async def read_sheet(self, spreadsheet_id: str, sheet_name: str) -> SheetSnapshot:
        """Read a whole worksheet. First row is the header row."""

    @abstractmethod
    async def write_sheet(self, spreadsheet_id: str, sheet_name: str, grid: List[List[Any]], start_cell: str = "A1") -> int:
        """Write a grid starting at start_cell. Returns updated cell count."""

    @abstractmethod
    async def append_rows(self, spreadsheet_id: str, sheet_name: str, rows: List[List[Any]]) -> int:
        """Append rows after existing content. Returns appended row count."""

    @abstractmethod
    async def clear_range(self, spreadsheet_id: str, sheet_name: str, cell_range: str) -> None:
        """Clear values in an A1 range (e.g. 'A:ZZ') of one worksheet."""

    @abstractmethod
    async def batch_update_cells(self, spreadsheet_id: str, updates: List[Dict[str, Any]]) -> int:
        """Apply [{range, values}] updates in one request. Returns updated cell count."""

    @abstractmethod
    async def list_spreadsheets(self, page_size: int = 100) -> List[Dict[str, Any]]:
        """Spreadsheets visible to the credentials, newest first."""

    @abstractmethod
    async def get_metadata(self, spreadsheet_id: str) -> Dict[str, Any]:
        """Title and worksheet list of a spreadsheet."""


class GoogleSheetsClient(SpreadsheetClient):
    """SpreadsheetClient backed by gspread."""

    def __init__(self, gc: Optional[gspread.Client] = None):
        self._gc = gc
        self._spreadsheets: Dict[str, gspread.Spreadsheet] = {}

    def _client(self) -> gspread.Client:
        if self._gc is None:
            self._gc = get_gspread_client()
        if self._gc is None:
            raise SheetsServiceError("Google Sheets service not configured")
        return self._gc

    def _open(self, spreadsheet_id: str) -> gspread.Spreadsheet:
        if spreadsheet_id not in self._spreadsheets:
            try:
                self._spreadsheets[spreadsheet_id] = self._client().open_by_key(spreadsheet_id)
            except gspread.exceptions.SpreadsheetNotFound:
                raise SheetsServiceError(f"Spreadsheet {spreadsheet_id} not found. Check the ID and sharing settings.")
            except gspread.exceptions.APIError as e:
                raise SheetsServiceError(_describe_api_error(e))
        return self._spreadsheets[spreadsheet_id]

    def _worksheet(self, spreadsheet_id: str, sheet_name: str) -> gspread.Worksheet:
        try:
            return self._open(spreadsheet_id).worksheet(sheet_name)
        except gspread.exceptions.WorksheetNotFound:
            raise SheetsServiceError(f"Worksheet '{sheet_name}' not found in {spreadsheet_id}")

    async def _run(self, label: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except SheetsServiceError:
            raise
        except gspread.exceptions.APIError as e:
            logger.error(f"Sheets API error during {label}: {e}")
            raise SheetsServiceError(f"Failed to {label}: {_describe_api_error(e)}")

    async def read_sheet(self, spreadsheet_id: str, sheet_name: str) -> SheetSnapshot:
        def _read():
            sh = self._open(spreadsheet_id)
            ws = self._worksheet(spreadsheet_id, sheet_name)
            values = ws.get_all_values(value_render_option=VALUE_RENDER_OPTION)
            headers = [str(h) for h in values[0]] if values else []
            return SheetSnapshot(
                spreadsheet_id=spreadsheet_id,
                sheet_name=sheet_name,
                headers=headers,
                rows=[list(r) for r in values[1:]],
                sheet_id=ws.id,
                spreadsheet_title=sh.title,
            )
        return await self._run("read sheet", _read)

    async def write_sheet(self, spreadsheet_id: str, sheet_name: str, grid: List[List[Any]], start_cell: str = "A1") -> int:
        def _write():
            ws = self._worksheet(spreadsheet_id, sheet_name)
            result = ws.update(values=grid, range_name=start_cell, value_input_option=VALUE_INPUT_OPTION)
            return (result or {}).get("updatedCells", 0)
        updated = await self._run("write to sheet", _write)
        logger.info(f"Wrote {len(grid)} rows to {spreadsheet_id}/{sheet_name} ({updated} cells)")
        return updated

    async def append_rows(self, spreadsheet_id: str, sheet_name: str, rows: List[List[Any]]) -> int:
        if not rows:
            return 0

        def _append():
            ws = self._worksheet(spreadsheet_id, sheet_name)
            result = ws.append_rows(rows, value_input_option=VALUE_INPUT_OPTION, insert_data_option="INSERT_ROWS")
            return (result or {}).get("updates", {}).get("updatedRows", len(rows))
        appended = await self._run("append to sheet", _append)
        logger.info(f"Appended {appended} rows to {spreadsheet_id}/{sheet_name}")
        return appended

    async def clear_range(self, spreadsheet_id: str, sheet_name: str, cell_range: str) -> None:
        def _clear():
            self._worksheet(spreadsheet_id, sheet_name).batch_clear([cell_range])
        await self._run("clear range", _clear)

    async def batch_update_cells(self, spreadsheet_id: str, updates: List[Dict[str, Any]]) -> int:
        if not updates:
            return 0

        def _batch():
            sh = self._open(spreadsheet_id)
            result = sh.values_batch_update({
                "valueInputOption": VALUE_INPUT_OPTION,
                "data": [{"range": u["range"], "values": u["values"]} for u in updates],
            })
            return (result or {}).get("totalUpdatedCells", 0)
        return await self._run("update cells", _batch)

    async def list_spreadsheets(self, page_size: int = 100) -> List[Dict[str, Any]]:
        def _list():
            files = self._client().list_spreadsheet_files()
            files.sort(key=lambda f: f.get("modifiedTime", ""), reverse=True)
            return [
                {"id": f.get("id", ""), "name": f.get("name", ""), "modified_time": f.get("modifiedTime")}
                for f in files[:page_size]
            ]
        return await self._run("list spreadsheets", _list)

    async def get_metadata(self, spreadsheet_id: str) -> Dict[str, Any]:
        def _meta():
            sh = self._open(spreadsheet_id)
            return {
                "spreadsheet_id": spreadsheet_id,
                "title": sh.title,
                "sheets": [
                    {
                        "sheet_id": ws.id,
                        "title": ws.title,
                        "row_count": ws.row_count,
                        "column_count": ws.col_count,
                    }
                    for ws in sh.worksheets()
                ],
            }
        return await self._run("get spreadsheet metadata", _meta)


def _describe_api_error(e: "gspread.exceptions.APIError") -> str:
    status = e.response.status_code if hasattr(e, "response") else None
    if status == 403:
        return "Access denied. Share the sheet with the service account email as Editor."
    if status == 404:
        return "Sheet not found. Check the spreadsheet ID."
    return f"Google API error: {e}"
