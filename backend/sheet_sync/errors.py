"""
Sync error taxonomy.

ConfigurationError, MappingError: fatal before any write
RowValidationError: missing required field; gated by skip_invalid
RowProcessingError: any other per-row failure (Sheet → CRM only)
RunFailure: a CRM → Sheet run aborted

Transform problems never raise; see transformer.py.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for every sync engine error."""


class ConfigurationError(SyncError):
    """A SyncConfig or FieldMapping cannot be used as given."""


class MappingError(ConfigurationError):
    """A mapped sheet column is missing from the sheet header row."""

    def __init__(self, missing_columns: list[str]):
        self.missing_columns = list(missing_columns)
        cols = ", ".join(f'"{c}"' for c in self.missing_columns)
        super().__init__(f"Column(s) {cols} not found in sheet")


class RowValidationError(SyncError):
    """One or more required mapped fields are empty in a row."""

    def __init__(self, missing_fields: list[str], row_number: Optional[int] = None):
        self.missing_fields = list(missing_fields)
        self.row_number = row_number
        message = f"Missing required fields: {', '.join(self.missing_fields)}"
        if row_number is not None:
            message = f"Row {row_number}: {message}"
        super().__init__(message)

    def with_row(self, row_number: int) -> "RowValidationError":
        return RowValidationError(self.missing_fields, row_number)


class RowProcessingError(SyncError):
    """A single sheet row failed during search/create/update or transform."""

    def __init__(self, row_number: int, data: Any, cause: Exception):
        self.row_number = row_number
        self.data = data
        self.cause = cause
        super().__init__(str(cause) or cause.__class__.__name__)


class RunFailure(SyncError):
    """A run aborted as a whole; the job is marked FAILED."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message)
