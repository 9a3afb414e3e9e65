"""
Google Sheets Client Tests
==========================
GoogleSheetsClient over a mocked gspread client: value render/input options,
written rows reading back with the same fingerprint and decoding to the same
CRM values, and gspread errors surfacing as SheetsServiceError.
"""

import pytest
import sys
import os
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import gspread

from google_sheets_service import GoogleSheetsClient, SheetsServiceError
from sheet_sync.codec import build_header_row, fingerprint, record_to_row, row_to_record
from sheet_sync.models import FieldMapping
from sheet_sync.transformer import TransformType

# 2024-03-05T00:00:00Z
MARCH_5_MS = 1709596800000

DEAL_MAPPINGS = [
    FieldMapping(hubspot_property="email", sheet_column="Email", column_index=0),
    FieldMapping(hubspot_property="closedate", sheet_column="Close Date", column_index=1,
                 transform_type=TransformType.DATE_FORMAT, transform_config={"format": "MM/DD/YYYY"}),
    FieldMapping(hubspot_property="amount", sheet_column="Amount", column_index=2,
                 transform_type=TransformType.CURRENCY_FORMAT, transform_config={"currency": "USD"}),
    FieldMapping(hubspot_property="seats", sheet_column="Seats", column_index=3,
                 transform_type=TransformType.NUMBER_FORMAT, transform_config={"thousands": True}),
]


def _client(grid):
    """GoogleSheetsClient whose worksheet returns grid from get_all_values."""
    ws = MagicMock()
    ws.id = 0
    ws.get_all_values.return_value = grid
    sh = MagicMock()
    sh.title = "Deals"
    sh.worksheet.return_value = ws
    gc = MagicMock()
    gc.open_by_key.return_value = sh
    return GoogleSheetsClient(gc=gc), gc, sh, ws


class TestReadSheet:

    @pytest.mark.asyncio
    async def test_reads_formatted_values(self):
        client, _, _, ws = _client([["CRM ID", "Email"], ["101", "a@x.com"]])

        snapshot = await client.read_sheet("sheet-1", "Deals")

        ws.get_all_values.assert_called_once_with(value_render_option="FORMATTED_VALUE")
        assert snapshot.headers == ["CRM ID", "Email"]
        assert snapshot.rows == [["101", "a@x.com"]]
        assert snapshot.sheet_id == 0
        assert snapshot.spreadsheet_title == "Deals"

    @pytest.mark.asyncio
    async def test_empty_sheet(self):
        client, _, _, _ = _client([])

        snapshot = await client.read_sheet("sheet-1", "Deals")

        assert snapshot.headers == []
        assert snapshot.rows == []

    @pytest.mark.asyncio
    async def test_spreadsheet_is_opened_once(self):
        client, gc, _, _ = _client([["Email"]])

        await client.read_sheet("sheet-1", "Deals")
        await client.read_sheet("sheet-1", "Deals")

        gc.open_by_key.assert_called_once_with("sheet-1")


class TestWrittenRowReadBack:
    """A row written by a CRM → Sheet run must read back unchanged."""

    PROPERTIES = {
        "email": "a@x.com",
        "closedate": "2024-03-05T00:00:00Z",
        "amount": "1500",
        "seats": "12000",
    }

    @pytest.mark.asyncio
    async def test_fingerprint_matches_after_read(self):
        written = record_to_row(self.PROPERTIES, DEAL_MAPPINGS, record_id="101")
        assert written == ["101", "a@x.com", "03/05/2024", "$1,500.00", "12,000"]
        client, _, _, _ = _client([build_header_row(DEAL_MAPPINGS), written])

        snapshot = await client.read_sheet("sheet-1", "Deals")

        assert fingerprint(snapshot.rows[0]) == fingerprint(written)

    @pytest.mark.asyncio
    async def test_read_back_decodes_to_crm_values(self):
        written = record_to_row(self.PROPERTIES, DEAL_MAPPINGS, record_id="101")
        client, _, _, _ = _client([build_header_row(DEAL_MAPPINGS), written])

        snapshot = await client.read_sheet("sheet-1", "Deals")
        record = row_to_record(snapshot.rows[0], snapshot.headers, DEAL_MAPPINGS)

        assert record == {"email": "a@x.com", "closedate": MARCH_5_MS, "amount": 1500.0, "seats": 12000.0}

    @pytest.mark.asyncio
    async def test_sheets_date_display_decodes_to_same_day(self):
        """Sheets may show a USER_ENTERED date without leading zeros."""
        header = build_header_row(DEAL_MAPPINGS)
        client, _, _, _ = _client([header, ["101", "a@x.com", "3/5/2024", "$1,500.00", "12,000"]])

        snapshot = await client.read_sheet("sheet-1", "Deals")
        record = row_to_record(snapshot.rows[0], snapshot.headers, DEAL_MAPPINGS)

        assert record["closedate"] == MARCH_5_MS


class TestWrites:

    @pytest.mark.asyncio
    async def test_write_uses_user_entered(self):
        client, _, _, ws = _client([])
        ws.update.return_value = {"updatedCells": 4}

        updated = await client.write_sheet("sheet-1", "Deals", [["CRM ID", "Email"], ["101", "a@x.com"]])

        assert updated == 4
        ws.update.assert_called_once_with(
            values=[["CRM ID", "Email"], ["101", "a@x.com"]],
            range_name="A1",
            value_input_option="USER_ENTERED",
        )

    @pytest.mark.asyncio
    async def test_append_nothing_skips_api(self):
        client, _, _, ws = _client([])

        assert await client.append_rows("sheet-1", "Deals", []) == 0
        ws.append_rows.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_update(self):
        client, _, sh, _ = _client([])
        sh.values_batch_update.return_value = {"totalUpdatedCells": 2}

        updated = await client.batch_update_cells("sheet-1", [{"range": "'Deals'!A2", "values": [["101", "a@x.com"]]}])

        assert updated == 2
        body = sh.values_batch_update.call_args.args[0]
        assert body["valueInputOption"] == "USER_ENTERED"
        assert body["data"] == [{"range": "'Deals'!A2", "values": [["101", "a@x.com"]]}]


class TestErrors:

    @pytest.mark.asyncio
    async def test_missing_spreadsheet(self):
        client, gc, _, _ = _client([])
        gc.open_by_key.side_effect = gspread.exceptions.SpreadsheetNotFound()

        with pytest.raises(SheetsServiceError, match="not found"):
            await client.read_sheet("nope", "Deals")

    @pytest.mark.asyncio
    async def test_missing_worksheet(self):
        client, _, sh, _ = _client([])
        sh.worksheet.side_effect = gspread.exceptions.WorksheetNotFound("Deals")

        with pytest.raises(SheetsServiceError, match="Worksheet 'Deals' not found"):
            await client.read_sheet("sheet-1", "Deals")
