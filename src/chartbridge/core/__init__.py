"""Core utilities for CDA encoding and parsing."""

from chartbridge.core.cda import (
    NS,
    el_text,
    format_hl7_date,
    format_hl7_timestamp,
    get_title,
    parse_hl7_timestamp,
    parse_xml,
    serialize,
    sub,
    xml_escape,
)
from chartbridge.core.utils import normalize_date_to_iso, parse_narrative_date
