"""
CRM → Sheet orchestrator.

Pages every record of one entity type out of the CRM, renders each through the
codec and writes the result in one of three modes:

    overwrite   clear the sheet, write header + all rows at A1
    append      append all rows after the existing content
    update      match rows on the key column; rewrite matches in place,
                append the rest

A failure anywhere aborts the run as a whole (no per-record fallback): the job is
marked FAILED and the returned SyncResult carries the error.
"""

import logging
import os
from datetime import datetime, timezone

from sync_status import JobStatus, LogStatus, SyncOperation

from .change_detector import FIRST_DATA_ROW
from .codec import a1_range, build_header_row, fingerprint, record_to_row, requested_properties, is_blank
from .errors import ConfigurationError
from .models import SyncConfig, SyncDirection, SyncResult, WriteMode

logger = logging.getLogger(__name__)

PAGE_SIZE = int(os.environ.get("HUBSPOT_PAGE_SIZE", "100"))

# Safety cap on pagination (50,000 records at 100/page)
MAX_PAGES = int(os.environ.get("SYNC_MAX_PAGES", "500"))

CLEAR_RANGE = "A:ZZ"


class CrmToSheetSync:
    """Runs one CRM → Sheet sync for a config."""

    def __init__(self, crm, sheets, store, page_size: int = PAGE_SIZE, max_pages: int = MAX_PAGES):
        self.crm = crm
        self.sheets = sheets
        self.store = store
        self.page_size = page_size
        self.max_pages = max_pages

    async def execute_sync(self, config: SyncConfig) -> SyncResult:
        result = SyncResult(direction=SyncDirection.CRM_TO_SHEET)
        job_id = await self.store.create_job(config.id)
        result.job_id = job_id

        logger.info(
            f"CRM → Sheet sync started: config={config.id} entity={config.entity_type} "
            f"mode={config.write_mode} sheet={config.spreadsheet_id}/{config.sheet_name}"
        )

        try:
            records = await self._fetch_all(config)
            result.records_processed = len(records)

            mappings = config.sorted_mappings
            rows = [
                (record["id"], record_to_row(record.get("properties") or {}, mappings, record["id"]))
                for record in records
            ]

            if config.write_mode == WriteMode.OVERWRITE:
                written = await self._overwrite(config, rows)
            elif config.write_mode == WriteMode.APPEND:
                written = await self._append(config, rows)
            else:
                written = await self._update(config, rows, job_id, result)

            now = datetime.now(timezone.utc)
            for record_id, row_number, row, operation in written:
                await self.store.upsert_fingerprint(
                    config.spreadsheet_id, record_id, row_number, fingerprint(row), now
                )
                if operation == SyncOperation.CREATE:
                    result.records_created += 1
                else:
                    result.records_updated += 1
                await self.store.append_log(
                    job_id, operation, config.entity_type, record_id, LogStatus.SUCCESS
                )

            await self.store.update_job(
                job_id,
                status=JobStatus.COMPLETED,
                records_processed=result.records_processed,
                records_created=result.records_created,
                records_updated=result.records_updated,
                records_failed=0,
            )
            logger.info(
                f"CRM → Sheet sync complete: config={config.id} fetched={result.records_processed} "
                f"created={result.records_created} updated={result.records_updated} "
                f"skipped={result.records_skipped}"
            )

        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"CRM → Sheet sync failed for config {config.id}: {message}")
            result.add_error(None, None, message)
            await self.store.append_log(
                job_id, SyncOperation.ERROR, config.entity_type, None, LogStatus.ERROR, message
            )
            await self.store.update_job(
                job_id,
                status=JobStatus.FAILED,
                error_message=message,
                records_processed=result.records_processed,
                records_created=result.records_created,
                records_updated=result.records_updated,
                records_failed=len(result.errors),
            )

        return result

    async def _fetch_all(self, config: SyncConfig) -> list[dict]:
        """Every record of the config's entity type, following cursors to the end."""
        properties = requested_properties(config.field_mappings)
        records: list[dict] = []
        cursor = None
        page_count = 0

        while True:
            page = await self.crm.list_page(
                config.entity_type,
                page_size=self.page_size,
                cursor=cursor,
                properties=properties,
            )
            records.extend(page.records)
            page_count += 1

            if not page.next_cursor:
                break
            if page_count >= self.max_pages:
                logger.warning(
                    f"Hit MAX_PAGES ({self.max_pages}) for {config.entity_type} "
                    f"(config={config.id}). Stopping pagination."
                )
                break
            cursor = page.next_cursor

        logger.info(f"Fetched {len(records)} {config.entity_type} records in {page_count} pages")
        return records

    # ------------------------------------------------------------------
    # Write modes. Each returns [(record_id, row_number, row, operation)].
    # ------------------------------------------------------------------

    async def _overwrite(self, config: SyncConfig, rows: list[tuple]) -> list[tuple]:
        grid = [build_header_row(config.field_mappings)] + [row for _, row in rows]
        await self.sheets.clear_range(config.spreadsheet_id, config.sheet_name, CLEAR_RANGE)
        await self.sheets.write_sheet(config.spreadsheet_id, config.sheet_name, grid, start_cell="A1")
        return [
            (record_id, index + FIRST_DATA_ROW, row, SyncOperation.CREATE)
            for index, (record_id, row) in enumerate(rows)
        ]

    async def _append(self, config: SyncConfig, rows: list[tuple]) -> list[tuple]:
        snapshot = await self.sheets.read_sheet(config.spreadsheet_id, config.sheet_name)
        to_append = [row for _, row in rows]
        first_row = FIRST_DATA_ROW + len(snapshot.rows)

        # Nothing in the sheet yet: lay down the header first
        if not snapshot.headers:
            to_append.insert(0, build_header_row(config.field_mappings))
            first_row = FIRST_DATA_ROW

        await self.sheets.append_rows(config.spreadsheet_id, config.sheet_name, to_append)
        return [
            (record_id, first_row + index, row, SyncOperation.CREATE)
            for index, (record_id, row) in enumerate(rows)
        ]

    async def _update(self, config: SyncConfig, rows: list[tuple], job_id: str, result: SyncResult) -> list[tuple]:
        snapshot = await self.sheets.read_sheet(config.spreadsheet_id, config.sheet_name)

        key_index = snapshot.header_index(config.key_column)
        if key_index < 0:
            raise ConfigurationError(f'Key column "{config.key_column}" not found in sheet')

        key_mapping = next((m for m in config.field_mappings if m.sheet_column == config.key_column), None)
        if key_mapping is None:
            raise ConfigurationError(f'Key column "{config.key_column}" has no field mapping')
        # record_to_row prepends the record id, shifting every mapped cell by one
        incoming_key_index = key_mapping.column_index + 1

        existing: dict[str, int] = {}
        for index, existing_row in enumerate(snapshot.rows):
            if key_index < len(existing_row) and not is_blank(existing_row[key_index]):
                existing.setdefault(str(existing_row[key_index]).strip(), index + FIRST_DATA_ROW)

        updates: list[dict] = []
        appends: list[tuple] = []
        written: list[tuple] = []

        for record_id, row in rows:
            key = row[incoming_key_index] if incoming_key_index < len(row) else None
            if is_blank(key):
                result.records_skipped += 1
                await self.store.append_log(
                    job_id, SyncOperation.SKIP, config.entity_type, record_id, LogStatus.SKIPPED,
                    f'Blank value in key column "{config.key_column}"'
                )
                continue

            row_number = existing.get(str(key).strip())
            if row_number is not None:
                updates.append({"range": a1_range(config.sheet_name, f"A{row_number}"), "values": [row]})
                written.append((record_id, row_number, row, SyncOperation.UPDATE))
            else:
                appends.append((record_id, row))

        if updates:
            await self.sheets.batch_update_cells(config.spreadsheet_id, updates)

        if appends:
            await self.sheets.append_rows(config.spreadsheet_id, config.sheet_name, [row for _, row in appends])
            first_row = FIRST_DATA_ROW + len(snapshot.rows)
            written.extend(
                (record_id, first_row + index, row, SyncOperation.CREATE)
                for index, (record_id, row) in enumerate(appends)
            )

        return written
