"""SheetBridge - HubSpot ↔ Google Sheets sync service"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, BackgroundTasks
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from dataclasses import asdict
from pathlib import Path
from pydantic import BaseModel, Field, ValidationError
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from google_sheets_service import GoogleSheetsClient, SheetsServiceError, SpreadsheetClient, get_service_account_email
from hubspot_crm import HubSpotAPIError
from sheet_sync.change_detector import detect_sheet_changes
from sheet_sync.errors import ConfigurationError, RowValidationError
from sheet_sync.models import FieldMapping
from sync_engine import (
    build_crm_client, get_active_syncs, resume_all_sync_loops, run_sync_for_config,
    start_cleanup_loop, stop_all_loops, trigger_sync_background,
)
from sync_store import SupabaseSyncStore, SyncStateStore, get_supabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="SheetBridge - HubSpot ↔ Google Sheets Sync")
api_router = APIRouter(prefix="/api")


# ============ Dependencies ============

def get_store() -> SyncStateStore:
    supabase = get_supabase()
    if supabase is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return SupabaseSyncStore(supabase)


def get_sheets_client() -> SpreadsheetClient:
    return GoogleSheetsClient()


def get_crm_builder():
    return build_crm_client


# ============ Pydantic Models ============

class ValidateMappingsRequest(BaseModel):
    field_mappings: List[Dict[str, Any]] = Field(min_length=1)
    spreadsheet_id: Optional[str] = None
    sheet_name: str = "Sheet1"


# ============ Helpers ============

async def _load_config(store: SyncStateStore, config_id: str):
    try:
        config = await store.get_config(config_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if config is None:
        raise HTTPException(status_code=404, detail="Sync config not found")
    return config


# ============ Sync Configs ============

@api_router.get("/sync-configs/{config_id}")
async def get_sync_config(config_id: str, store: SyncStateStore = Depends(get_store)):
    config = await _load_config(store, config_id)
    active = get_active_syncs()
    return {
        "config": config.model_dump(),
        "loop_active": config_id in active["loops"],
        "running": config_id in active["running"],
    }


@api_router.post("/sync-configs/{config_id}/run")
async def run_sync_config(
    config_id: str,
    background_tasks: BackgroundTasks,
    wait: bool = False,
    store: SyncStateStore = Depends(get_store),
    sheets: SpreadsheetClient = Depends(get_sheets_client),
    crm_builder=Depends(get_crm_builder),
):
    """Trigger a sync. Runs in the background unless wait=true."""
    await _load_config(store, config_id)

    if not wait:
        background_tasks.add_task(trigger_sync_background, store, config_id)
        return {"status": "started", "config_id": config_id}

    try:
        crm = await crm_builder(store, config_id)
        result = await run_sync_for_config(store, config_id, crm=crm, sheets=sheets)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RowValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (SheetsServiceError, HubSpotAPIError) as e:
        logger.error(f"Sync run failed for config {config_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return result.to_dict()


@api_router.get("/sync-configs/{config_id}/changes")
async def get_sync_changes(
    config_id: str,
    store: SyncStateStore = Depends(get_store),
    sheets: SpreadsheetClient = Depends(get_sheets_client),
):
    """Preview which sheet rows changed since the last sync."""
    config = await _load_config(store, config_id)
    try:
        changes = await detect_sheet_changes(sheets, store, config.spreadsheet_id, config.sheet_name)
    except SheetsServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    summary: Dict[str, int] = {}
    for c in changes:
        summary[c.type] = summary.get(c.type, 0) + 1
    return {"changes": [asdict(c) for c in changes], "summary": summary}


# ============ Field Mappings ============

@api_router.post("/field-mappings/validate")
async def validate_field_mappings(
    request: ValidateMappingsRequest,
    sheets: SpreadsheetClient = Depends(get_sheets_client),
):
    """Check mapping shapes, transform configs and (optionally) sheet columns."""
    errors: List[str] = []
    mappings: List[FieldMapping] = []

    for i, raw in enumerate(request.field_mappings):
        try:
            mapping = FieldMapping.model_validate(raw)
        except ValidationError as e:
            errors.append(f"Mapping {i}: {e.errors()[0].get('msg', 'invalid')}")
            continue
        errors.extend(mapping.validate_transform())
        mappings.append(mapping)

    valid_mappings = []
    if request.spreadsheet_id:
        try:
            snapshot = await sheets.read_sheet(request.spreadsheet_id, request.sheet_name)
        except SheetsServiceError as e:
            raise HTTPException(status_code=502, detail=str(e))
        for mapping in mappings:
            position = snapshot.header_index(mapping.sheet_column)
            if position < 0:
                errors.append(f'Column "{mapping.sheet_column}" not found in sheet')
            else:
                valid_mappings.append({**mapping.model_dump(), "column_index": position})

    return {"valid": not errors, "errors": errors, "valid_mappings": valid_mappings}


# ============ Google Sheets ============

@api_router.get("/sheets")
async def list_sheets(sheets: SpreadsheetClient = Depends(get_sheets_client)):
    try:
        files = await sheets.list_spreadsheets()
    except SheetsServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"spreadsheets": files, "service_account_email": get_service_account_email()}


@api_router.get("/sheets/{spreadsheet_id}")
async def get_sheet(
    spreadsheet_id: str,
    sheet_name: Optional[str] = None,
    sheets: SpreadsheetClient = Depends(get_sheets_client),
):
    """Spreadsheet metadata; with sheet_name also headers, row count and the first 5 rows."""
    try:
        data = await sheets.get_metadata(spreadsheet_id)
        if sheet_name:
            snapshot = await sheets.read_sheet(spreadsheet_id, sheet_name)
            data["headers"] = snapshot.headers
            data["row_count"] = len(snapshot.rows)
            data["sample_data"] = snapshot.rows[:5]
    except SheetsServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return data


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    supabase = get_supabase()
    if supabase is None:
        logger.warning("Supabase not configured, sync loops not started")
        return
    store = SupabaseSyncStore(supabase)
    await resume_all_sync_loops(store)
    start_cleanup_loop(store)


@app.on_event("shutdown")
async def shutdown():
    await stop_all_loops()
