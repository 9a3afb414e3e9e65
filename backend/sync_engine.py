"""
Sheet sync runner.
Dispatches a run to the right orchestrator, serializes runs per config, and owns
the background loops: interval sync per config, change-detection triggered
Sheet → CRM runs, and retention cleanup of old jobs/logs.

Only one run per config is ever in flight. Every run takes the config's
asyncio.Lock; background triggers additionally skip (rather than queue) when a
run for the same config is already active.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from crm_adapters import CRMAdapter, create_adapter
from crypto_utils import decrypt_credentials
from google_sheets_service import GoogleSheetsClient, SpreadsheetClient
from sheet_sync import CrmToSheetSync, SheetToCrmSync
from sheet_sync.change_detector import detect_sheet_changes
from sheet_sync.errors import ConfigurationError, RunFailure
from sheet_sync.models import Change, ChangeType, SyncConfig, SyncDirection, SyncResult
from sync_store import SyncStateStore

logger = logging.getLogger(__name__)

# Interval used when a config does not set sync_interval_minutes
DEFAULT_SYNC_INTERVAL_MINUTES = int(os.environ.get("SYNC_DEFAULT_INTERVAL_MINUTES", "15"))

# Jobs and logs older than this are deleted by the cleanup loop
LOG_RETENTION_DAYS = int(os.environ.get("SYNC_LOG_RETENTION_DAYS", "30"))

CLEANUP_INTERVAL = 86400  # daily

# Interval loops: {config_id: asyncio.Task}
_active_syncs: dict[str, asyncio.Task] = {}

# In-flight background runs: {config_id: asyncio.Task}
_running_syncs: dict[str, asyncio.Task] = {}

_config_locks: dict[str, asyncio.Lock] = {}

_cleanup_task: Optional[asyncio.Task] = None


def _lock_for(config_id: str) -> asyncio.Lock:
    if config_id not in _config_locks:
        _config_locks[config_id] = asyncio.Lock()
    return _config_locks[config_id]


async def execute_sync(
    config: SyncConfig,
    crm: CRMAdapter,
    sheets: SpreadsheetClient,
    store: SyncStateStore,
    changes: Optional[list[Change]] = None,
    raise_on_failure: bool = False,
) -> SyncResult:
    """
    Run one sync for a config, dispatching on its direction.

    Args:
        changes: Sheet → CRM only; restrict the run to rows classified new/modified
        raise_on_failure: raise RunFailure when a CRM → Sheet run aborted

    Raises:
        RunFailure: CRM → Sheet run failed and raise_on_failure is set
        MappingError / RowValidationError: Sheet → CRM preconditions or strict mode
    """
    if config.direction == SyncDirection.CRM_TO_SHEET:
        result = await CrmToSheetSync(crm, sheets, store).execute_sync(config)
        if raise_on_failure and not result.success:
            raise RunFailure(result.errors[0].error, job_id=result.job_id)
        return result

    return await SheetToCrmSync(crm, sheets, store).execute_sync(config, changes=changes)


async def build_crm_client(store: SyncStateStore, config_id: str) -> CRMAdapter:
    """CRM adapter for the connection a config uses, with credentials decrypted."""
    credentials = await store.get_crm_credentials(config_id)
    if credentials is None:
        raise ConfigurationError(f"No active CRM connection for sync config {config_id}")
    try:
        return create_adapter("hubspot", decrypt_credentials(credentials))
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


async def run_sync_for_config(
    store: SyncStateStore,
    config_id: str,
    changes: Optional[list[Change]] = None,
    crm: Optional[CRMAdapter] = None,
    sheets: Optional[SpreadsheetClient] = None,
    raise_on_failure: bool = False,
) -> SyncResult:
    """
    Load a config, build its clients and run it under the per-config lock.

    Raises:
        ConfigurationError: config missing/invalid or no usable CRM connection
    """
    config = await store.get_config(config_id)
    if config is None:
        raise ConfigurationError(f"Sync config {config_id} not found")

    if crm is None:
        crm = await build_crm_client(store, config_id)
    if sheets is None:
        sheets = GoogleSheetsClient()

    async with _lock_for(config_id):
        return await execute_sync(config, crm, sheets, store, changes=changes, raise_on_failure=raise_on_failure)


async def trigger_sync_background(store: SyncStateStore, config_id: str, changes: Optional[list[Change]] = None):
    """Fire-and-forget wrapper for run_sync_for_config. Skips if a run is already active."""
    existing = _running_syncs.get(config_id)
    if existing is not None and not existing.done():
        logger.info(f"Sync already running for config {config_id}, skipping duplicate")
        return

    _running_syncs[config_id] = asyncio.current_task()
    try:
        result = await run_sync_for_config(store, config_id, changes=changes)
        logger.info(f"Background sync finished for config {config_id}: success={result.success}")
    except asyncio.CancelledError:
        logger.info(f"Background sync cancelled for config {config_id}")
    except Exception as e:
        logger.error(f"Background sync failed for config {config_id}: {e}")
    finally:
        _running_syncs.pop(config_id, None)


async def run_change_detection(store: SyncStateStore, config_id: str, sheets: Optional[SpreadsheetClient] = None, crm: Optional[CRMAdapter] = None) -> Optional[SyncResult]:
    """
    Detect sheet changes for a Sheet → CRM config and sync only the changed rows.

    Returns None when the config is inactive, not Sheet → CRM, or nothing changed.
    """
    config = await store.get_config(config_id)
    if config is None:
        raise ConfigurationError(f"Sync config {config_id} not found")
    if not config.is_active or config.direction != SyncDirection.SHEET_TO_CRM:
        return None

    if sheets is None:
        sheets = GoogleSheetsClient()
    changes = await detect_sheet_changes(sheets, store, config.spreadsheet_id, config.sheet_name)
    if not any(c.type != ChangeType.DELETED for c in changes):
        logger.info(f"No new or modified rows for config {config_id}")
        return None

    return await run_sync_for_config(store, config_id, changes=changes, crm=crm, sheets=sheets)


# ========================================
# Interval loops
# ========================================

async def start_sync_loop(store: SyncStateStore, config_id: str, interval_minutes: Optional[int] = None):
    """
    Start a repeating sync loop for a config.
    Stores the task in _active_syncs for lifecycle management.
    """
    interval = (interval_minutes or DEFAULT_SYNC_INTERVAL_MINUTES) * 60

    # Stop existing loop if any
    if config_id in _active_syncs:
        _active_syncs[config_id].cancel()
        del _active_syncs[config_id]

    async def _loop():
        while True:
            await asyncio.sleep(interval)
            try:
                config = await store.get_config(config_id)
                if config is None or not config.is_active:
                    logger.info(f"Sync config {config_id} removed or inactive, stopping sync loop")
                    break

                if config.direction == SyncDirection.SHEET_TO_CRM:
                    await run_change_detection(store, config_id)
                else:
                    await trigger_sync_background(store, config_id)

            except asyncio.CancelledError:
                logger.info(f"Sync loop cancelled for config {config_id}")
                break
            except Exception as e:
                logger.error(f"Sync loop error for config {config_id}: {e}")
                # Keep looping through transient errors

        if _active_syncs.get(config_id) is asyncio.current_task():
            del _active_syncs[config_id]

    task = asyncio.create_task(_loop())
    _active_syncs[config_id] = task
    logger.info(f"Started sync loop for config {config_id} (interval={interval}s)")


async def stop_sync_loop(config_id: str) -> bool:
    """Stop the interval loop of one config. Returns whether one was running."""
    task = _active_syncs.pop(config_id, None)
    if task is None:
        return False
    task.cancel()
    logger.info(f"Stopped sync loop for config {config_id}")
    return True


async def stop_all_loops() -> list[str]:
    """Cancel every interval loop, background run and the cleanup loop."""
    global _cleanup_task

    cancelled = []
    for config_id in list(_active_syncs):
        _active_syncs.pop(config_id).cancel()
        cancelled.append(f"loop:{config_id}")
    for config_id in list(_running_syncs):
        _running_syncs.pop(config_id).cancel()
        cancelled.append(f"run:{config_id}")
    if _cleanup_task is not None:
        _cleanup_task.cancel()
        _cleanup_task = None

    if cancelled:
        logger.info(f"Cancelled sync tasks: {cancelled}")
    return cancelled


def get_active_syncs() -> dict:
    """Config ids with a live interval loop or an in-flight run."""
    return {
        "loops": sorted(k for k, t in _active_syncs.items() if not t.done()),
        "running": sorted(k for k, t in _running_syncs.items() if not t.done()),
    }


async def resume_all_sync_loops(store: SyncStateStore):
    """
    Start interval loops for every active config.
    Called on server startup.
    """
    try:
        configs = await store.list_active_configs()
    except Exception as e:
        logger.warning(f"Failed to load active sync configs: {e}")
        return

    if not configs:
        logger.info("No active sync configs to resume")
        return

    for config in configs:
        await start_sync_loop(store, config.id, config.sync_interval_minutes)
    logger.info(f"Resumed {len(configs)} sync loops")


# ========================================
# Retention
# ========================================

async def cleanup_old_records(store: SyncStateStore, days_to_keep: int = LOG_RETENTION_DAYS) -> dict:
    """Delete sync logs and finished jobs older than days_to_keep."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
    logs_deleted = await store.delete_logs_before(cutoff)
    jobs_deleted = await store.delete_jobs_before(cutoff)
    logger.info(f"Cleanup removed {logs_deleted} logs and {jobs_deleted} jobs older than {days_to_keep} days")
    return {"logs_deleted": logs_deleted, "jobs_deleted": jobs_deleted}


def start_cleanup_loop(store: SyncStateStore, days_to_keep: int = LOG_RETENTION_DAYS):
    """Run cleanup_old_records once a day in the background."""
    global _cleanup_task

    if _cleanup_task is not None and not _cleanup_task.done():
        return

    async def _loop():
        while True:
            try:
                await cleanup_old_records(store, days_to_keep)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Sync log cleanup failed: {e}")
            await asyncio.sleep(CLEANUP_INTERVAL)

    _cleanup_task = asyncio.create_task(_loop())
