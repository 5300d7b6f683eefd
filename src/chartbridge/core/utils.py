"""Shared utility functions for date normalization and value parsing."""

from __future__ import annotations

import re

_MONTHS = {
    "january": "01",
    "february": "02",
    "march": "03",
    "april": "04",
    "may": "05",
    "june": "06",
    "july": "07",
    "august": "08",
    "september": "09",
    "october": "10",
    "november": "11",
    "december": "12",
}


def normalize_date_to_iso(dt_str: str) -> str:
    """Convert any common clinical date format to ISO 8601 YYYY-MM-DD.

    Supported formats:
    - YYYY-MM-DD (already ISO): "2025-06-30"
    - YYYY-MM-DDTHH:MM:SS+ZZ:ZZ (FHIR ISO): "2025-06-30T13:25:00+00:00"
    - MM/DD/YYYY (narrative tables): "01/15/2026"
    - YYYYMMDD (HL7 TS): "20211123"
    - Month DDth, YYYY: "November 23rd, 2021 2:37pm"

    Returns empty string for empty/unparseable input.
    """
    if not dt_str or not dt_str.strip():
        return ""
    s = dt_str.strip()

    m = re.match(r"(\d{4})-(\d{2})-(\d{2})", s)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"

    m = re.match(r"(\d{1,2})/(\d{1,2})/(\d{4})", s)
    if m:
        return f"{m.group(3)}-{int(m.group(1)):02d}-{int(m.group(2)):02d}"

    m = re.match(r"(\d{4})(\d{2})(\d{2})", s)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"

    return parse_narrative_date(s)


def parse_narrative_date(text: str) -> str:
    """Parse dates like 'November 23rd, 2021 2:37pm' -> '2021-11-23'.

    Handles ordinal suffixes (1st, 2nd, 3rd, 4th, etc.).
    """
    m = re.match(
        r"(\w+)\s+(\d{1,2})(?:st|nd|rd|th)?,?\s*(\d{4})",
        text.strip(),
        re.IGNORECASE,
    )
    if m:
        month = _MONTHS.get(m.group(1).lower())
        if month:
            return f"{m.group(3)}-{month}-{int(m.group(2)):02d}"
    return ""


def try_parse_numeric(value: str) -> float | None:
    """Try to parse a result value string as a float.

    Handles leading operators like '<', '>', '<=', '>='.
    Returns None if not parseable.
    """
    if not value:
        return None
    cleaned = re.sub(r"^[<>=]+\s*", "", value.strip())
    try:
        return float(cleaned)
    except (ValueError, TypeError):
        return None


def format_quantity(value: float | None) -> str:
    """Render a numeric quantity without a trailing '.0' for whole numbers."""
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def split_provider_name(name: str) -> tuple[str, str]:
    """Split 'Given Family Names' into (given, family).

    A single-word name is used as both given and family, so the family name
    is never empty.
    """
    parts = name.split()
    if not parts:
        return "", ""
    family = " ".join(parts[1:]) or parts[0]
    return parts[0], family
