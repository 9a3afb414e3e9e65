"""
Sync data model.

SyncConfig / FieldMapping are validated pydantic models (loaded from the
sync_configs + field_mappings tables, read-only during a run). Everything a run
produces (snapshots, fingerprints, results, changes) is a plain dataclass.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .transformer import validate_transform_config


class EntityType:
    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"

    ALL = frozenset({CONTACT, COMPANY, DEAL})

    # Stored configs use the plural CRM object names too
    _ALIASES = {"contacts": CONTACT, "companies": COMPANY, "deals": DEAL}

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL

    @classmethod
    def normalize(cls, value: str) -> str:
        value = (value or "").strip().lower()
        return cls._ALIASES.get(value, value)


class SyncDirection:
    CRM_TO_SHEET = "crm_to_sheet"
    SHEET_TO_CRM = "sheet_to_crm"

    ALL = frozenset({CRM_TO_SHEET, SHEET_TO_CRM})


class WriteMode:
    OVERWRITE = "overwrite"
    APPEND = "append"
    UPDATE = "update"

    ALL = frozenset({OVERWRITE, APPEND, UPDATE})


class ChangeType:
    NEW = "new"
    MODIFIED = "modified"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class FieldMapping(BaseModel):
    """One CRM property ↔ one sheet column."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hubspot_property: str = Field(alias="hubspotProperty")
    sheet_column: str = Field(alias="sheetColumn")
    column_index: int = Field(alias="columnIndex", ge=0)
    transform_type: Optional[str] = Field(default=None, alias="transformType")
    transform_config: dict[str, Any] = Field(default_factory=dict, alias="transformConfig")
    is_required: bool = Field(default=False, alias="isRequired")
    default_value: Any = Field(default=None, alias="defaultValue")

    @field_validator("transform_config", mode="before")
    @classmethod
    def _none_config_is_empty(cls, v):
        return v or {}

    def validate_transform(self) -> list[str]:
        """Human-readable problems with this mapping's transform config."""
        valid, errors = validate_transform_config(self.transform_type, self.transform_config)
        return [] if valid else [f"{self.sheet_column}: {e}" for e in errors]


class SyncConfig(BaseModel):
    """Immutable per-run configuration."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    entity_type: str = Field(alias="entityType")
    direction: str
    spreadsheet_id: str = Field(alias="spreadsheetId")
    sheet_name: str = Field(default="Sheet1", alias="sheetName")
    field_mappings: list[FieldMapping] = Field(alias="fieldMappings", min_length=1)
    write_mode: str = Field(default=WriteMode.OVERWRITE, alias="writeMode")
    key_column: Optional[str] = Field(default="Email", alias="keyColumn")
    identifier_column: Optional[str] = Field(default=None, alias="identifierColumn")
    create_new: bool = Field(default=True, alias="createNew")
    update_existing: bool = Field(default=True, alias="updateExisting")
    skip_invalid: bool = Field(default=True, alias="skipInvalid")
    is_active: bool = Field(default=True, alias="isActive")
    sync_interval_minutes: Optional[int] = Field(default=None, alias="syncIntervalMinutes", ge=1)

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        # Supabase returns integer or uuid primary keys
        return str(v) if v is not None else v

    @field_validator("entity_type", mode="before")
    @classmethod
    def _check_entity(cls, v):
        v = EntityType.normalize(str(v))
        if not EntityType.is_valid(v):
            raise ValueError(f"Unsupported entity type: {v}")
        return v

    @field_validator("direction")
    @classmethod
    def _check_direction(cls, v):
        if v not in SyncDirection.ALL:
            raise ValueError(f"Unknown sync direction: {v}")
        return v

    @field_validator("write_mode")
    @classmethod
    def _check_write_mode(cls, v):
        if v not in WriteMode.ALL:
            raise ValueError(f"Unknown write mode: {v}")
        return v

    @model_validator(mode="after")
    def _check_mappings(self):
        indexes = [m.column_index for m in self.field_mappings]
        duplicates = sorted({i for i in indexes if indexes.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate column index in field mappings: {duplicates}")

        problems = [p for m in self.field_mappings for p in m.validate_transform()]
        if problems:
            raise ValueError("; ".join(problems))

        if self.direction == SyncDirection.SHEET_TO_CRM and not self.identifier_column:
            raise ValueError("identifier_column is required for sheet_to_crm syncs")
        if self.write_mode == WriteMode.UPDATE and not self.key_column:
            raise ValueError("key_column is required for update write mode")
        return self

    @property
    def sorted_mappings(self) -> list[FieldMapping]:
        return sorted(self.field_mappings, key=lambda m: m.column_index)

    @classmethod
    def from_record(cls, record: dict, mappings: Optional[list[dict]] = None) -> "SyncConfig":
        """
        Build a config from persisted rows.

        Raises:
            ConfigurationError: if the stored config is invalid
        """
        data = dict(record)
        if mappings is not None:
            data["field_mappings"] = mappings
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid sync config {record.get('id')}: {_summarize(e)}"
            ) from e


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Run artifacts
# ---------------------------------------------------------------------------

@dataclass
class SheetSnapshot:
    """In-memory read of one worksheet. Header row excluded from rows."""
    spreadsheet_id: str
    sheet_name: str
    headers: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    sheet_id: Optional[int] = None
    spreadsheet_title: str = ""

    def header_index(self, column: str) -> int:
        """0-based position of a header, -1 if absent."""
        try:
            return self.headers.index(column)
        except ValueError:
            return -1


@dataclass
class RowFingerprint:
    spreadsheet_id: str
    record_id: str
    row_number: int
    hash: str
    last_synced_at: Optional[datetime] = None


@dataclass
class RowError:
    row: Any           # sheet row number (Sheet → CRM) or record id / None (CRM → Sheet)
    data: Any          # raw row or record
    error: str


@dataclass
class Change:
    row: int
    type: str          # ChangeType.NEW | MODIFIED | DELETED


@dataclass
class SyncResult:
    """Output of one orchestrator run. Partial success is a normal outcome."""
    direction: str = ""
    job_id: Optional[str] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    errors: list[RowError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, row: Any, data: Any, error: str) -> None:
        self.errors.append(RowError(row=row, data=data, error=error))

    def to_dict(self) -> dict:
        result = asdict(self)
        result["success"] = self.success
        return result
