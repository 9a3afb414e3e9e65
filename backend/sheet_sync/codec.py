"""
Row/Record Codec.
Converts CRM property maps ↔ positioned sheet rows using the field mappings,
and fingerprints row content for change detection.
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any, Iterable, Optional

from .errors import MappingError, RowValidationError
from .models import FieldMapping
from .transformer import TransformType, apply_forward, apply_reverse

# First column of every sheet written by a CRM → Sheet run
RECORD_ID_HEADER = "CRM ID"


def is_blank(cell: Any) -> bool:
    return cell is None or str(cell).strip() == ""


def _sorted(mappings: Iterable[FieldMapping]) -> list[FieldMapping]:
    return sorted(mappings, key=lambda m: m.column_index)


def requested_properties(mappings: Iterable[FieldMapping]) -> list[str]:
    """CRM properties a fetch must ask for, including CONCATENATE sub-fields."""
    props: list[str] = []
    for m in mappings:
        props.append(m.hubspot_property)
        if m.transform_type == TransformType.CONCATENATE:
            props.extend(str(f) for f in m.transform_config.get("fields") or [])
    return list(dict.fromkeys(props))


def record_to_row(
    properties: Mapping,
    mappings: Iterable[FieldMapping],
    record_id: Optional[str] = None,
) -> list:
    """
    Build a sheet row from a CRM property map.

    Each mapped value lands at its column_index; gaps are "". When record_id is
    given it is prepended so every written row carries its CRM id.
    """
    ordered = _sorted(mappings)
    width = ordered[-1].column_index + 1 if ordered else 0
    row: list = [""] * width

    for m in ordered:
        value = properties.get(m.hubspot_property)
        if m.transform_type == TransformType.CONCATENATE and not isinstance(value, Mapping):
            value = properties
        if value is None:
            value = m.default_value
        if m.transform_type and value is not None:
            value = apply_forward(value, m.transform_type, m.transform_config)
        row[m.column_index] = "" if value is None else value

    if record_id is not None:
        row.insert(0, str(record_id))
    return row


def build_header_row(mappings: Iterable[FieldMapping]) -> list[str]:
    """Header row lined up with record_to_row(..., record_id=...) output."""
    ordered = _sorted(mappings)
    width = ordered[-1].column_index + 1 if ordered else 0
    headers = [""] * width
    for m in ordered:
        headers[m.column_index] = m.sheet_column
    return [RECORD_ID_HEADER] + headers


def validate_headers(headers: list[str], mappings: Iterable[FieldMapping]) -> None:
    """
    Raises:
        MappingError: listing every mapped column absent from the header row
    """
    present = set(headers)
    missing = [m.sheet_column for m in mappings if m.sheet_column not in present]
    if missing:
        raise MappingError(missing)


def row_to_record(row: list, headers: list[str], mappings: Iterable[FieldMapping]) -> dict:
    """
    Build a CRM property map from a sheet row.

    Raises:
        MappingError: a mapped column is missing from headers (run-level precondition)
        RowValidationError: one or more required cells are blank
    """
    mappings = list(mappings)
    validate_headers(headers, mappings)

    properties: dict = {}
    missing: list[str] = []

    for m in mappings:
        index = headers.index(m.sheet_column)
        cell = row[index] if index < len(row) else None

        if is_blank(cell):
            if m.default_value is not None:
                properties[m.hubspot_property] = m.default_value
            elif m.is_required:
                missing.append(m.sheet_column)
            continue

        if m.transform_type:
            cell = apply_reverse(cell, m.transform_type, m.transform_config)
        properties[m.hubspot_property] = cell

    if missing:
        raise RowValidationError(missing)
    return properties


def is_empty_row(row: Optional[list]) -> bool:
    """True iff every cell is None or blank after trimming (zero-length rows included)."""
    return all(is_blank(cell) for cell in (row or []))


def _canonical_cell(cell: Any) -> str:
    if cell is None:
        return ""
    if isinstance(cell, bool):
        return "TRUE" if cell else "FALSE"
    if isinstance(cell, float) and cell.is_integer():
        return str(int(cell))
    return str(cell)


def fingerprint(row: Optional[list]) -> str:
    """
    SHA-256 over the canonical JSON of a row.

    Cells are stringified and trailing blank cells dropped, so a row written as
    [..., 42, ""] and read back as [..., "42"] hashes the same. Equality only;
    not a security primitive.
    """
    cells = [_canonical_cell(c) for c in (row or [])]
    while cells and cells[-1].strip() == "":
        cells.pop()
    payload = json.dumps(cells, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# A1 notation
# ---------------------------------------------------------------------------

def column_letter(index: int) -> str:
    """0 → A, 25 → Z, 26 → AA."""
    letters = ""
    index += 1
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def column_index(letter: str) -> int:
    """A → 0, Z → 25, AA → 26."""
    index = 0
    for ch in letter.upper():
        index = index * 26 + (ord(ch) - 64)
    return index - 1


def a1_range(sheet_name: str, cell_range: str) -> str:
    """'My Sheet'!A2; quotes inside the sheet name are doubled."""
    quoted = sheet_name.replace("'", "''")
    return f"'{quoted}'!{cell_range}"
