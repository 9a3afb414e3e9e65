"""
Sync state & log store.

SyncStateStore is the persistence interface the orchestrators and the runner
depend on. SupabaseSyncStore implements it over these tables:

    sync_configs        one row per configured sync (+ crm_connection_id)
    field_mappings      ordered mappings, config_id → sync_configs.id
    sync_jobs           one row per run
    sync_logs           one row per create/update/skip/error decision
    sheet_sync_states   row fingerprints, unique (spreadsheet_id, crm_record_id)

The supabase-py client is synchronous; every .execute() goes through _db() so it
runs in a worker thread instead of blocking the event loop.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from sheet_sync.errors import ConfigurationError
from sheet_sync.models import RowFingerprint, SyncConfig
from sync_status import JobStatus

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_KEY = os.environ.get('SUPABASE_SERVICE_KEY')
DB_AVAILABLE = bool(SUPABASE_URL and SUPABASE_KEY)

_supabase_client = None


def get_supabase():
    """Lazy-initialize the shared Supabase client. None when not configured."""
    global _supabase_client
    if _supabase_client is None and DB_AVAILABLE:
        try:
            from supabase import create_client
            _supabase_client = create_client(
                SUPABASE_URL.strip(),
                SUPABASE_KEY.strip()
            )
        except Exception as e:
            logger.warning(f"Failed to init Supabase client: {e}")
    return _supabase_client


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class SyncStateStore(ABC):
    """Fingerprints, jobs, logs and config lookups for the sync engine."""

    # -- fingerprints --

    @abstractmethod
    async def upsert_fingerprint(
        self,
        spreadsheet_id: str,
        record_id: str,
        row_number: int,
        hash: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Insert or replace the state for (spreadsheet_id, record_id)."""

    @abstractmethod
    async def list_fingerprints(self, spreadsheet_id: str) -> list[RowFingerprint]:
        """Every stored state for a spreadsheet."""

    # -- jobs & logs --

    @abstractmethod
    async def create_job(self, config_id: str) -> str:
        """Create an IN_PROGRESS job. Returns its id."""

    @abstractmethod
    async def update_job(self, job_id: str, **fields) -> None:
        """Patch a job row (status, counters, error_message, ...)."""

    @abstractmethod
    async def append_log(
        self,
        job_id: str,
        operation: str,
        entity_type: str,
        entity_id: Optional[str],
        status: str,
        message: Optional[str] = None,
    ) -> None:
        """Record one create/update/skip/error decision."""

    # -- configs & credentials --

    @abstractmethod
    async def get_config(self, config_id: str) -> Optional[SyncConfig]:
        """Load and validate a config with its mappings. None if it does not exist."""

    @abstractmethod
    async def list_active_configs(self) -> list[SyncConfig]:
        """Every active config that validates."""

    @abstractmethod
    async def get_crm_credentials(self, config_id: str) -> Optional[dict]:
        """Stored (still encrypted) credentials of the CRM connection a config uses."""

    # -- retention --

    @abstractmethod
    async def delete_logs_before(self, cutoff: datetime) -> int:
        """Delete log rows created before cutoff. Returns rows deleted."""

    @abstractmethod
    async def delete_jobs_before(self, cutoff: datetime) -> int:
        """Delete finished job rows created before cutoff. Returns rows deleted."""


class SupabaseSyncStore(SyncStateStore):
    """SyncStateStore over a supabase-py client."""

    def __init__(self, supabase):
        self.supabase = supabase

    # ==================== Fingerprints ====================

    async def upsert_fingerprint(self, spreadsheet_id, record_id, row_number, hash, timestamp=None):
        data = {
            "spreadsheet_id": spreadsheet_id,
            "crm_record_id": str(record_id),
            "row_number": row_number,
            "row_hash": hash,
            "last_synced_at": (timestamp or datetime.now(timezone.utc)).isoformat(),
        }
        await _db(lambda: self.supabase.table("sheet_sync_states").upsert(
            data,
            on_conflict="spreadsheet_id,crm_record_id"
        ).execute())

    async def list_fingerprints(self, spreadsheet_id: str) -> list[RowFingerprint]:
        result = await _db(lambda: self.supabase.table("sheet_sync_states").select(
            "spreadsheet_id, crm_record_id, row_number, row_hash, last_synced_at"
        ).eq("spreadsheet_id", spreadsheet_id).order("last_synced_at").execute())

        return [
            RowFingerprint(
                spreadsheet_id=row["spreadsheet_id"],
                record_id=str(row["crm_record_id"]),
                row_number=int(row["row_number"]),
                hash=row["row_hash"],
                last_synced_at=_parse_ts(row.get("last_synced_at")),
            )
            for row in (result.data or [])
        ]

    # ==================== Jobs & Logs ====================

    async def create_job(self, config_id: str) -> str:
        result = await _db(lambda: self.supabase.table("sync_jobs").insert({
            "config_id": config_id,
            "status": JobStatus.IN_PROGRESS,
            "started_at": _now_iso(),
        }).execute())
        if not result.data:
            raise RuntimeError(f"Failed to create sync job for config {config_id}")
        return str(result.data[0]["id"])

    async def update_job(self, job_id: str, **fields) -> None:
        data = dict(fields)
        if data.get("status") in JobStatus.FINISHED and "completed_at" not in data:
            data["completed_at"] = _now_iso()
        try:
            await _db(lambda: self.supabase.table("sync_jobs").update(data).eq("id", job_id).execute())
        except Exception as e:
            logger.warning(f"Failed to update sync job {job_id}: {e}")

    async def append_log(self, job_id, operation, entity_type, entity_id, status, message=None):
        data = {
            "job_id": job_id,
            "operation": operation,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "status": status,
            "message": message,
            "created_at": _now_iso(),
        }
        try:
            await _db(lambda: self.supabase.table("sync_logs").insert(data).execute())
        except Exception as e:
            logger.warning(f"Failed to write sync log for job {job_id}: {e}")

    # ==================== Configs ====================

    async def get_config(self, config_id: str) -> Optional[SyncConfig]:
        result = await _db(lambda: self.supabase.table("sync_configs").select("*").eq(
            "id", config_id
        ).execute())
        if not result.data:
            return None

        mappings = await self._load_mappings([config_id])
        return SyncConfig.from_record(result.data[0], mappings.get(config_id, []))

    async def list_active_configs(self) -> list[SyncConfig]:
        result = await _db(lambda: self.supabase.table("sync_configs").select("*").eq(
            "is_active", True
        ).execute())
        rows = result.data or []
        if not rows:
            return []

        mappings = await self._load_mappings([str(r["id"]) for r in rows])
        configs = []
        for row in rows:
            try:
                configs.append(SyncConfig.from_record(row, mappings.get(str(row["id"]), [])))
            except ConfigurationError as e:
                logger.warning(f"Skipping invalid sync config {row.get('id')}: {e}")
        return configs

    async def _load_mappings(self, config_ids: list[str]) -> dict[str, list[dict]]:
        result = await _db(lambda: self.supabase.table("field_mappings").select("*").in_(
            "config_id", config_ids
        ).order("column_index").execute())

        grouped: dict[str, list[dict]] = {}
        for row in (result.data or []):
            grouped.setdefault(str(row["config_id"]), []).append(row)
        return grouped

    async def get_crm_credentials(self, config_id: str) -> Optional[dict]:
        result = await _db(lambda: self.supabase.table("sync_configs").select(
            "crm_connection_id"
        ).eq("id", config_id).execute())
        if not result.data or not result.data[0].get("crm_connection_id"):
            return None

        connection_id = result.data[0]["crm_connection_id"]
        conn = await _db(lambda: self.supabase.table("crm_connections").select(
            "credentials"
        ).eq("id", connection_id).eq("is_active", True).execute())
        if not conn.data:
            return None
        return conn.data[0].get("credentials") or {}

    # ==================== Retention ====================

    async def delete_logs_before(self, cutoff: datetime) -> int:
        result = await _db(lambda: self.supabase.table("sync_logs").delete().lt(
            "created_at", cutoff.isoformat()
        ).execute())
        return len(result.data or [])

    async def delete_jobs_before(self, cutoff: datetime) -> int:
        result = await _db(lambda: self.supabase.table("sync_jobs").delete().lt(
            "created_at", cutoff.isoformat()
        ).in_("status", sorted(JobStatus.FINISHED)).execute())
        return len(result.data or [])
