"""
Change Detector.
Diffs the current sheet content against the fingerprints stored by earlier runs.

Row numbers are the identity key (header is row 1, first data row is row 2).
That holds only while rows are not reordered or deleted mid-sheet without a
matching state cleanup; a reorder shows up as a burst of "modified" rows.
"""

import logging
from typing import Iterable

from .codec import fingerprint
from .models import Change, ChangeType, RowFingerprint, SheetSnapshot

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2


def detect_changes(snapshot: SheetSnapshot, fingerprints: Iterable[RowFingerprint]) -> list[Change]:
    """
    Classify every row as new / modified, and every stored row that has no
    current counterpart as deleted. Unchanged rows are omitted.

    When two records claim the same row number the last one listed wins; the
    store lists fingerprints oldest sync first.
    """
    remaining: dict[int, str] = {}
    for fp in fingerprints:
        if fp.row_number in remaining:
            logger.warning(
                f"Row {fp.row_number} of {fp.spreadsheet_id} has more than one stored fingerprint, "
                f"using the one for record {fp.record_id}"
            )
        remaining[fp.row_number] = fp.hash

    changes: list[Change] = []

    for index, row in enumerate(snapshot.rows):
        row_number = index + FIRST_DATA_ROW
        stored_hash = remaining.pop(row_number, None)
        if stored_hash is None:
            changes.append(Change(row=row_number, type=ChangeType.NEW))
        elif stored_hash != fingerprint(row):
            changes.append(Change(row=row_number, type=ChangeType.MODIFIED))

    for row_number in remaining:
        changes.append(Change(row=row_number, type=ChangeType.DELETED))

    return changes


async def detect_sheet_changes(sheets, store, spreadsheet_id: str, sheet_name: str) -> list[Change]:
    """Read the sheet and its stored fingerprints, then diff them."""
    snapshot = await sheets.read_sheet(spreadsheet_id, sheet_name)
    stored = await store.list_fingerprints(spreadsheet_id)
    changes = detect_changes(snapshot, stored)

    if changes:
        counts: dict[str, int] = {}
        for c in changes:
            counts[c.type] = counts.get(c.type, 0) + 1
        logger.info(f"Detected {len(changes)} changes in {spreadsheet_id}/{sheet_name}: {counts}")
    return changes
