"""
Field Transformer.
Pure value conversion between CRM-native values and spreadsheet cells, both ways.

apply_forward(): CRM → Sheet
apply_reverse(): Sheet → CRM

Both are fail-soft. An unknown transform type returns the value unchanged and a
parse failure degrades to "pass through" or "zero"; a transform never raises,
so one odd value cannot abort a large run.
"""

import json
import logging
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from dateutil import parser as dtparser

from .custom_functions import check_custom_function, run_custom_function

logger = logging.getLogger(__name__)


class TransformType:
    DATE_FORMAT = "DATE_FORMAT"
    NUMBER_FORMAT = "NUMBER_FORMAT"
    CURRENCY_FORMAT = "CURRENCY_FORMAT"
    BOOLEAN_TO_TEXT = "BOOLEAN_TO_TEXT"
    ENUM_TO_TEXT = "ENUM_TO_TEXT"
    CONCATENATE = "CONCATENATE"
    SPLIT = "SPLIT"
    UPPERCASE = "UPPERCASE"
    LOWERCASE = "LOWERCASE"
    TITLE_CASE = "TITLE_CASE"
    TRIM = "TRIM"
    PHONE_FORMAT = "PHONE_FORMAT"
    EMAIL_NORMALIZE = "EMAIL_NORMALIZE"
    JSON_TO_STRING = "JSON_TO_STRING"
    ARRAY_TO_STRING = "ARRAY_TO_STRING"
    CUSTOM_FUNCTION = "CUSTOM_FUNCTION"

    ALL = frozenset({
        DATE_FORMAT, NUMBER_FORMAT, CURRENCY_FORMAT, BOOLEAN_TO_TEXT, ENUM_TO_TEXT,
        CONCATENATE, SPLIT, UPPERCASE, LOWERCASE, TITLE_CASE, TRIM, PHONE_FORMAT,
        EMAIL_NORMALIZE, JSON_TO_STRING, ARRAY_TO_STRING, CUSTOM_FUNCTION,
    })

    # Forward loses information; reverse is identity
    IRREVERSIBLE = frozenset({CONCATENATE, UPPERCASE, LOWERCASE, TITLE_CASE, TRIM})


DEFAULT_DATE_FORMAT = "MM/DD/YYYY"

_DATE_PATTERNS = {
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
}

# Intl.NumberFormat('en-US', {style: 'currency'}) symbols for common codes
CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "CAD": "CA$",
    "AUD": "A$",
}
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND"}

_EPOCH_MS_RE = re.compile(r"^-?\d{11,13}$")
_LEADING_NUMBER_RE = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")
_NON_DIGIT_RE = re.compile(r"\D")
_WORD_RE = re.compile(r"\w\S*")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _to_float(value: Any) -> Optional[float]:
    """parseFloat-style leading-number parse. None if there is no number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _LEADING_NUMBER_RE.match(str(value))
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def _plain_number(num: float) -> str:
    if num.is_integer():
        return str(int(num))
    return repr(num)


def _to_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings, date/datetime objects and epoch milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if _EPOCH_MS_RE.match(text):
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        return dtparser.parse(text)
    except (ValueError, OverflowError):
        return None


def _to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _strip_to_number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(_NON_NUMERIC_RE.sub("", str(value)))
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# Forward (CRM → Sheet)
# ---------------------------------------------------------------------------

def format_date(value: Any, config: dict) -> Any:
    if value is None or value == "":
        return ""
    dt = _to_datetime(value)
    if dt is None:
        return str(value)
    pattern = _DATE_PATTERNS.get(config.get("format") or DEFAULT_DATE_FORMAT, "%x")
    return dt.strftime(pattern)


def format_number(value: Any, config: dict) -> str:
    num = _to_float(value)
    if num is None:
        return str(value)
    decimals = config.get("decimals")
    if decimals is not None:
        return f"{num:.{int(decimals)}f}"
    if config.get("thousands"):
        return f"{int(num):,}" if num.is_integer() else f"{num:,}"
    return _plain_number(num)


def format_currency(value: Any, config: dict) -> str:
    num = _to_float(value)
    if num is None:
        return str(value)
    code = str(config.get("currency") or "USD").upper()
    decimals = 0 if code in ZERO_DECIMAL_CURRENCIES else 2
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    sign = "-" if num < 0 else ""
    return f"{sign}{symbol}{abs(num):,.{decimals}f}"


def boolean_to_text(value: Any, config: dict) -> str:
    is_true = value is True or (
        isinstance(value, str) and value.strip().lower() == "true"
    ) or (not isinstance(value, bool) and value == 1)
    if config.get("trueValue") and config.get("falseValue"):
        return config["trueValue"] if is_true else config["falseValue"]
    return "Yes" if is_true else "No"


def enum_to_text(value: Any, config: dict) -> Any:
    mapping = config.get("mapping")
    if not isinstance(mapping, Mapping):
        return value
    return _lookup(mapping, value)


def concatenate_fields(value: Any, config: dict) -> str:
    fields = config.get("fields")
    if not isinstance(fields, list) or not isinstance(value, Mapping):
        return str(value)
    separator = config.get("separator", " ")
    return separator.join(str(value.get(f) or "") for f in fields)


def split_field(value: Any, config: dict) -> str:
    parts = str(value).split(config.get("separator") or ",")
    index = config.get("index")
    if index is not None and 0 <= int(index) < len(parts) and parts[int(index)]:
        return parts[int(index)].strip()
    return parts[0] or ""


def to_title_case(value: Any, config: dict) -> str:
    return _WORD_RE.sub(lambda m: m.group(0)[:1].upper() + m.group(0)[1:].lower(), str(value))


def format_phone(value: Any, config: dict) -> str:
    digits = _NON_DIGIT_RE.sub("", str(value))
    if (config.get("format") or "US") == "US" and len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return digits


def json_to_string(value: Any, config: dict) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def array_to_string(value: Any, config: dict) -> Any:
    if isinstance(value, (list, tuple)):
        return (config.get("separator") or ", ").join(str(v) for v in value)
    return value


# ---------------------------------------------------------------------------
# Reverse (Sheet → CRM)
# ---------------------------------------------------------------------------

def parse_date(value: Any, config: dict) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    text = str(value).strip()
    fmt = config.get("format") or DEFAULT_DATE_FORMAT
    try:
        if fmt in ("MM/DD/YYYY", "DD/MM/YYYY") and text.count("/") == 2:
            a, b, year = (int(p) for p in text.split("/"))
            month, day = (a, b) if fmt == "MM/DD/YYYY" else (b, a)
            return _to_epoch_ms(datetime(year, month, day, tzinfo=timezone.utc))
        if fmt == "YYYY-MM-DD" and text.count("-") == 2:
            year, month, day = (int(p) for p in text.split("-"))
            return _to_epoch_ms(datetime(year, month, day, tzinfo=timezone.utc))
        return _to_epoch_ms(dtparser.parse(text))
    except (ValueError, OverflowError):
        return 0


def parse_number(value: Any, config: dict) -> float:
    return _strip_to_number(value)


def text_to_boolean(value: Any, config: dict) -> bool:
    if config.get("trueValue") and config.get("falseValue"):
        return str(value) == str(config["trueValue"])
    return str(value).strip().lower() in ("yes", "true", "1")


def text_to_enum(value: Any, config: dict) -> Any:
    reverse_mapping = config.get("reverseMapping")
    if not isinstance(reverse_mapping, Mapping):
        mapping = config.get("mapping")
        if not isinstance(mapping, Mapping):
            return value
        reverse_mapping = {v: k for k, v in mapping.items()}
    return _lookup(reverse_mapping, value)


def join_field(value: Any, config: dict) -> str:
    if isinstance(value, (list, tuple)):
        return (config.get("separator") or ",").join(str(v) for v in value)
    return str(value)


def parse_phone(value: Any, config: dict) -> str:
    return _NON_DIGIT_RE.sub("", str(value))


def string_to_json(value: Any, config: dict) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def string_to_array(value: Any, config: dict) -> list:
    return str(value).split(config.get("separator") or ", ")


def _identity(value: Any, config: dict) -> Any:
    return value


def _email_normalize(value: Any, config: dict) -> str:
    return str(value).lower().strip()


def _lookup(mapping: Mapping, value: Any) -> Any:
    try:
        if value in mapping:
            return mapping[value]
    except TypeError:
        return value
    return mapping.get(str(value), value)


_FORWARD: dict[str, Callable[[Any, dict], Any]] = {
    TransformType.DATE_FORMAT: format_date,
    TransformType.NUMBER_FORMAT: format_number,
    TransformType.CURRENCY_FORMAT: format_currency,
    TransformType.BOOLEAN_TO_TEXT: boolean_to_text,
    TransformType.ENUM_TO_TEXT: enum_to_text,
    TransformType.CONCATENATE: concatenate_fields,
    TransformType.SPLIT: split_field,
    TransformType.UPPERCASE: lambda v, c: str(v).upper(),
    TransformType.LOWERCASE: lambda v, c: str(v).lower(),
    TransformType.TITLE_CASE: to_title_case,
    TransformType.TRIM: lambda v, c: str(v).strip(),
    TransformType.PHONE_FORMAT: format_phone,
    TransformType.EMAIL_NORMALIZE: _email_normalize,
    TransformType.JSON_TO_STRING: json_to_string,
    TransformType.ARRAY_TO_STRING: array_to_string,
    TransformType.CUSTOM_FUNCTION: lambda v, c: run_custom_function(c.get("function"), v),
}

_REVERSE: dict[str, Callable[[Any, dict], Any]] = {
    TransformType.DATE_FORMAT: parse_date,
    TransformType.NUMBER_FORMAT: parse_number,
    TransformType.CURRENCY_FORMAT: parse_number,
    TransformType.BOOLEAN_TO_TEXT: text_to_boolean,
    TransformType.ENUM_TO_TEXT: text_to_enum,
    TransformType.CONCATENATE: _identity,
    TransformType.SPLIT: join_field,
    TransformType.UPPERCASE: _identity,
    TransformType.LOWERCASE: _identity,
    TransformType.TITLE_CASE: _identity,
    TransformType.TRIM: _identity,
    TransformType.PHONE_FORMAT: parse_phone,
    TransformType.EMAIL_NORMALIZE: _email_normalize,
    TransformType.JSON_TO_STRING: string_to_json,
    TransformType.ARRAY_TO_STRING: string_to_array,
    TransformType.CUSTOM_FUNCTION: lambda v, c: run_custom_function(c.get("reverseFunction"), v),
}


def _apply(table: dict, value: Any, transform_type: Optional[str], config: Optional[dict]) -> Any:
    handler = table.get(transform_type) if transform_type else None
    if handler is None:
        if transform_type:
            logger.debug(f"Unknown transform type {transform_type!r}, passing value through")
        return value
    try:
        return handler(value, config or {})
    except Exception as e:
        logger.debug(f"{transform_type} failed on {value!r}, passing value through: {e}")
        return value


def apply_forward(value: Any, transform_type: Optional[str], config: Optional[dict] = None) -> Any:
    """Transform a CRM value into its sheet representation."""
    return _apply(_FORWARD, value, transform_type, config)


def apply_reverse(value: Any, transform_type: Optional[str], config: Optional[dict] = None) -> Any:
    """Transform a sheet cell back into its CRM representation."""
    return _apply(_REVERSE, value, transform_type, config)


def validate_transform_config(transform_type: Optional[str], config: Optional[dict] = None) -> tuple[bool, list[str]]:
    """
    Check that a transform has the config keys it needs.

    Returns:
        (valid, errors); errors are human-readable strings
    """
    config = config or {}
    errors: list[str] = []

    if transform_type == TransformType.DATE_FORMAT:
        if not config.get("format"):
            errors.append("Date format is required")
    elif transform_type == TransformType.BOOLEAN_TO_TEXT:
        # Custom labels are used only as a pair
        if bool(config.get("trueValue")) != bool(config.get("falseValue")):
            errors.append("Both trueValue and falseValue are required for custom labels")
    elif transform_type == TransformType.ENUM_TO_TEXT:
        if not isinstance(config.get("mapping"), Mapping):
            errors.append("Enum mapping is required")
    elif transform_type == TransformType.CONCATENATE:
        if not isinstance(config.get("fields"), list):
            errors.append("Fields array is required for concatenation")
    elif transform_type == TransformType.CUSTOM_FUNCTION:
        problem = check_custom_function(config.get("function"))
        if problem:
            errors.append(problem)
        if config.get("reverseFunction"):
            reverse_problem = check_custom_function(config.get("reverseFunction"))
            if reverse_problem:
                errors.append(f"Reverse: {reverse_problem}")

    return len(errors) == 0, errors
