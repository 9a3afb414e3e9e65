# HubSpot ↔ Google Sheets sync core
# Exposes the two orchestrators, the data model and the error taxonomy as the public surface.
# Clients (CRM, spreadsheet, store) are passed in; nothing here imports them.

from .change_detector import detect_changes, detect_sheet_changes  # noqa: F401
from .codec import build_header_row, fingerprint, record_to_row, row_to_record  # noqa: F401
from .crm_to_sheet import CrmToSheetSync  # noqa: F401
from .errors import (  # noqa: F401
    ConfigurationError,
    MappingError,
    RowProcessingError,
    RowValidationError,
    RunFailure,
    SyncError,
)
from .models import (  # noqa: F401
    Change,
    ChangeType,
    EntityType,
    FieldMapping,
    RowFingerprint,
    SheetSnapshot,
    SyncConfig,
    SyncDirection,
    SyncResult,
    WriteMode,
)
from .sheet_to_crm import SheetToCrmSync  # noqa: F401
from .transformer import TransformType, apply_forward, apply_reverse, validate_transform_config  # noqa: F401
