"""
Sheet → CRM orchestrator.

Walks the data rows of a sheet in order and, per row: decodes it into CRM
properties, looks the record up by the identifier column, then creates or
updates it. Row failures are isolated: a failed row is recorded and the run
moves on. Missing required fields are governed by config.skip_invalid.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sync_status import JobStatus, LogStatus, SyncOperation

from .change_detector import FIRST_DATA_ROW, detect_sheet_changes
from .codec import fingerprint, is_blank, is_empty_row, row_to_record, validate_headers
from .errors import MappingError, RowProcessingError, RowValidationError
from .models import Change, ChangeType, FieldMapping, SheetSnapshot, SyncConfig, SyncDirection, SyncResult
from .transformer import apply_reverse

logger = logging.getLogger(__name__)


class SheetToCrmSync:
    """Runs one Sheet → CRM sync for a config."""

    def __init__(self, crm, sheets, store):
        self.crm = crm
        self.sheets = sheets
        self.store = store

    async def detect_changes(self, spreadsheet_id: str, sheet_name: str) -> list[Change]:
        return await detect_sheet_changes(self.sheets, self.store, spreadsheet_id, sheet_name)

    async def execute_sync(self, config: SyncConfig, changes: Optional[list[Change]] = None) -> SyncResult:
        """
        Sync sheet rows into the CRM.

        Args:
            config: Sheet → CRM sync config
            changes: When given, only rows classified new/modified are visited

        Raises:
            MappingError: a mapped column or the identifier column is missing
            RowValidationError: a row misses required fields and skip_invalid is off
        """
        result = SyncResult(direction=SyncDirection.SHEET_TO_CRM)
        job_id = await self.store.create_job(config.id)
        result.job_id = job_id

        logger.info(
            f"Sheet → CRM sync started: config={config.id} entity={config.entity_type} "
            f"sheet={config.spreadsheet_id}/{config.sheet_name}"
        )

        try:
            snapshot = await self.sheets.read_sheet(config.spreadsheet_id, config.sheet_name)
            validate_headers(snapshot.headers, config.field_mappings)
            identifier_index = snapshot.header_index(config.identifier_column)
            if identifier_index < 0:
                raise MappingError([config.identifier_column])
        except Exception as e:
            await self._fail(job_id, result, str(e))
            raise

        wanted = None
        if changes is not None:
            wanted = {c.row for c in changes if c.type in (ChangeType.NEW, ChangeType.MODIFIED)}

        identifier_mapping = next(
            (m for m in config.field_mappings if m.sheet_column == config.identifier_column), None
        )

        for index, row in enumerate(snapshot.rows):
            row_number = index + FIRST_DATA_ROW
            if wanted is not None and row_number not in wanted:
                continue

            if is_empty_row(row):
                result.records_skipped += 1
                continue

            try:
                await self._sync_row(config, snapshot, row, row_number, identifier_index, identifier_mapping, job_id, result)
            except RowValidationError as e:
                error = e.with_row(row_number)
                result.records_skipped += 1
                result.add_error(row_number, row, str(error))
                if not config.skip_invalid:
                    await self._fail(job_id, result, str(error))
                    raise error from e
                await self.store.append_log(
                    job_id, SyncOperation.SKIP, config.entity_type, None, LogStatus.SKIPPED, str(error)
                )
            except Exception as e:
                error = RowProcessingError(row_number, row, e)
                logger.error(f"Error processing row {row_number} (config={config.id}): {error}")
                result.add_error(row_number, row, str(error))
                await self.store.append_log(
                    job_id, SyncOperation.ERROR, config.entity_type, None, LogStatus.ERROR, str(error)
                )

        if result.success:
            await self.store.update_job(job_id, status=JobStatus.COMPLETED, **self._counters(result))
        else:
            await self.store.update_job(
                job_id,
                status=JobStatus.FAILED,
                error_message=f"{len(result.errors)} records failed to sync",
                **self._counters(result),
            )

        logger.info(
            f"Sheet → CRM sync complete: config={config.id} processed={result.records_processed} "
            f"created={result.records_created} updated={result.records_updated} "
            f"skipped={result.records_skipped} errors={len(result.errors)}"
        )
        return result

    async def _sync_row(
        self,
        config: SyncConfig,
        snapshot: SheetSnapshot,
        row: list,
        row_number: int,
        identifier_index: int,
        identifier_mapping: Optional[FieldMapping],
        job_id: str,
        result: SyncResult,
    ):
        properties = row_to_record(row, snapshot.headers, config.field_mappings)

        raw_identifier = row[identifier_index] if identifier_index < len(row) else None
        if identifier_mapping is not None:
            property_name = identifier_mapping.hubspot_property
            identifier = None if is_blank(raw_identifier) else apply_reverse(
                raw_identifier, identifier_mapping.transform_type, identifier_mapping.transform_config
            )
        else:
            property_name = config.identifier_column
            identifier = raw_identifier

        existing = None
        if not is_blank(identifier):
            existing = await self.crm.search_by_property(config.entity_type, property_name, identifier)

        if existing:
            if not config.update_existing:
                result.records_skipped += 1
                result.records_processed += 1
                return
            await self.crm.update(config.entity_type, existing["id"], properties)
            result.records_updated += 1
            record_id = existing["id"]
            operation = SyncOperation.UPDATE
        else:
            if not config.create_new:
                result.records_skipped += 1
                result.records_processed += 1
                return
            created = await self.crm.create(config.entity_type, properties)
            result.records_created += 1
            record_id = created["id"]
            operation = SyncOperation.CREATE

        await self.store.append_log(job_id, operation, config.entity_type, record_id, LogStatus.SUCCESS)
        await self.store.upsert_fingerprint(
            config.spreadsheet_id, record_id, row_number, fingerprint(row), datetime.now(timezone.utc)
        )
        result.records_processed += 1

    async def _fail(self, job_id: str, result: SyncResult, message: str):
        logger.error(f"Sheet → CRM sync failed (job={job_id}): {message}")
        await self.store.update_job(
            job_id,
            status=JobStatus.FAILED,
            error_message=message,
            **self._counters(result),
        )

    def _counters(self, result: SyncResult) -> dict:
        return {
            "records_processed": result.records_processed,
            "records_created": result.records_created,
            "records_updated": result.records_updated,
            "records_failed": len(result.errors),
        }
