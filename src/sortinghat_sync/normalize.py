"""Normalization functions for identity / affiliation correction rows.

All functions accept str | None; callers get either a cleaned string or a
parsed value.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime

# Open-ended enrollment boundaries are stored as these dates, never NULL.
OPEN_START = date(1900, 1, 1)
OPEN_END = date(2100, 1, 1)

# Most to least specific.
DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H",
    "%Y-%m-%d",
    "%Y-%m",
    "%Y",
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: field
# ---------------------------------------------------------------------------

def field(row: Mapping[str, str | None], column: str) -> str:
    """Return the trimmed cell for column, '' when missing or blank."""
    return trim(row.get(column)) or ""


# ---------------------------------------------------------------------------
# Rule 3: parse_datetime_any
# ---------------------------------------------------------------------------

def parse_datetime_any(value: str) -> datetime:
    """Parse value with the first matching format in DATETIME_FORMATS.

    Raises ValueError when no format matches.
    """
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"cannot parse datetime: {value!r}")


# ---------------------------------------------------------------------------
# Rule 4: parse_range_date
# ---------------------------------------------------------------------------

def parse_range_date(value: str | None, open_default: date) -> date:
    """Return the date portion of value, or open_default when blank.

    Use OPEN_START for range starts and OPEN_END for range ends.
    """
    v = trim(value)
    if v is None:
        return open_default
    return parse_datetime_any(v).date()


# ---------------------------------------------------------------------------
# Actor stamps
# ---------------------------------------------------------------------------

def identity_actor(row: Mapping[str, str | None]) -> str:
    """last_modified_by value for identity corrections."""
    return f"email:{field(row, 'user_email')},sfid:{field(row, 'user_sfid')}"


def enrollment_actor(row: Mapping[str, str | None]) -> str:
    """last_modified_by value for affiliation corrections."""
    return (
        f"email:{field(row, 'user_email')},"
        f"name:{field(row, 'user_name')},"
        f"sfid:{field(row, 'user_sfid')}"
    )
