"""CDA R2 XML utilities shared by the document builders and the extractor.

Covers the three codec primitives: HL7 TS date encoding, markup escaping
(applied once, by ``serialize``), and lxml tree construction/parsing.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone

from lxml import etree

from chartbridge.core.utils import normalize_date_to_iso

logger = logging.getLogger(__name__)

NS = "urn:hl7-org:v3"
XSI = "http://www.w3.org/2001/XMLSchema-instance"
SDTC = "urn:hl7-org:sdtc"

# Namespace URI -> prefix used on the wire ("" is the default namespace)
_PREFIXES = {NS: "", XSI: "xsi", SDTC: "sdtc"}

XSI_TYPE = f"{{{XSI}}}type"

# Characters that may not appear in an XML 1.0 document at all
_XML_ILLEGAL = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")

_HL7_TS = re.compile(r"^(\d{4,14})(?:\.\d+)?([+-]\d{4})?$")
# Year or year-month precision, kept as a 4 or 6 digit TS
_PARTIAL_DATE = re.compile(r"^(\d{4})(?:-(0[1-9]|1[0-2]))?$")


def tag(name: str) -> str:
    """Qualify a local name with the HL7 v3 namespace."""
    return f"{{{NS}}}{name}"


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def format_hl7_timestamp(value: str | date | datetime | None) -> str:
    """Encode a calendar value as a fourteen-digit HL7 TS (YYYYMMDDHHMMSS).

    Accepts ISO 8601 strings (with or without time or offset), date and
    datetime objects. Timezone-aware values are converted to UTC; naive values
    are taken as already being UTC. "YYYY" and "YYYY-MM" keep their
    precision as four and six digit values. Returns empty string for missing
    or unparseable input.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if not s:
            return ""
        if s.isdigit() and len(s) in (8, 14):
            return s.ljust(14, "0")
        partial = _PARTIAL_DATE.match(s)
        if partial:
            return "".join(g for g in partial.groups() if g)
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            iso = normalize_date_to_iso(s)
            if not iso:
                return ""
            try:
                dt = datetime.fromisoformat(iso)
            except ValueError:
                return ""

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return (
        f"{dt.year:04d}{dt.month:02d}{dt.day:02d}"
        f"{dt.hour:02d}{dt.minute:02d}{dt.second:02d}"
    )


def format_hl7_date(value: str | date | datetime | None) -> str:
    """Encode a calendar value as an eight-digit HL7 date (YYYYMMDD)."""
    return format_hl7_timestamp(value)[:8]


def parse_hl7_timestamp(value: str | None) -> str:
    """Decode an HL7 TS back into an ISO 8601 string.

    - 14 digits (optionally with fraction and +/-HHMM offset):
      "YYYY-MM-DDTHH:MM:SS", shifted to UTC when an offset is present
    - 10 or 12 digits: hour/minute precision, padded with zeros
    - 8 digits: "YYYY-MM-DD"
    - 6 digits: "YYYY-MM"; 4 digits: "YYYY"

    Anything else (other lengths, impossible calendar values, non-numeric
    text) decodes to empty string, i.e. the date is treated as absent.
    """
    if not value:
        return ""
    m = _HL7_TS.match(value.strip())
    if not m:
        logger.debug("Unparseable HL7 timestamp %r", value)
        return ""
    digits, offset = m.groups()

    if len(digits) == 4:
        return digits
    if len(digits) == 6:
        if 1 <= int(digits[4:6]) <= 12:
            return f"{digits[:4]}-{digits[4:6]}"
        return ""
    if len(digits) == 8:
        try:
            return datetime.strptime(digits, "%Y%m%d").date().isoformat()
        except ValueError:
            return ""
    if len(digits) not in (10, 12, 14):
        logger.debug("HL7 timestamp %r has an unsupported precision", value)
        return ""

    try:
        dt = datetime.strptime(digits.ljust(14, "0"), "%Y%m%d%H%M%S")
    except ValueError:
        return ""
    if offset:
        sign = 1 if offset[0] == "+" else -1
        dt -= sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5]))
    return dt.isoformat()


# ---------------------------------------------------------------------------
# Tree construction and serialization
# ---------------------------------------------------------------------------


def _clean(text: str) -> str:
    return _XML_ILLEGAL.sub("", text)


def new_root(name: str) -> etree._Element:
    """Create a document root in the HL7 namespace with xsi/sdtc declared."""
    return etree.Element(tag(name), nsmap={None: NS, "xsi": XSI, "sdtc": SDTC})


def sub(
    parent: etree._Element,
    name: str,
    attrs: dict[str, str] | None = None,
    text: str | None = None,
) -> etree._Element:
    """Append an HL7-namespaced child with attributes and optional text.

    Attribute values of None are omitted; text is stored raw and only escaped
    when the tree is serialized.
    """
    el = etree.SubElement(parent, tag(name))
    for key, val in (attrs or {}).items():
        if val is None:
            continue
        if key == "xsi:type":
            key = XSI_TYPE
        el.set(key, _clean(str(val)))
    if text:
        el.text = _clean(text)
    return el


def xml_escape(text: str) -> str:
    """Escape the five reserved markup characters."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _qualified(name: str) -> str:
    if not name.startswith("{"):
        return name
    uri, local = name[1:].split("}", 1)
    prefix = _PREFIXES.get(uri)
    if prefix is None:
        raise ValueError(f"Unregistered namespace: {uri}")
    return f"{prefix}:{local}" if prefix else local


def _write(el: etree._Element, lines: list[str], depth: int, root: bool = False) -> None:
    indent = "  " * depth
    name = _qualified(el.tag)
    parts = [name]
    if root:
        for uri, prefix in _PREFIXES.items():
            parts.append(f'xmlns:{prefix}="{uri}"' if prefix else f'xmlns="{uri}"')
    for key, val in el.attrib.items():
        parts.append(f'{_qualified(key)}="{xml_escape(val)}"')
    open_tag = " ".join(parts)

    children = [c for c in el if isinstance(c.tag, str)]
    text = xml_escape(el.text) if el.text else ""
    if not children:
        if text:
            lines.append(f"{indent}<{open_tag}>{text}</{name}>")
        else:
            lines.append(f"{indent}<{open_tag}/>")
        return

    lines.append(f"{indent}<{open_tag}>{text}")
    for child in children:
        _write(child, lines, depth + 1)
    lines.append(f"{indent}</{name}>")


def serialize(root: etree._Element, stylesheet: str | None = "CDA.xsl") -> str:
    """Render a document tree as an indented XML string.

    This is the only place escaping happens: every text node and attribute
    value passes through xml_escape exactly once.
    """
    lines = ['<?xml version="1.0" encoding="UTF-8"?>']
    if stylesheet:
        lines.append(f'<?xml-stylesheet type="text/xsl" href="{xml_escape(stylesheet)}"?>')
    _write(root, lines, 0, root=True)
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Parsing and navigation
# ---------------------------------------------------------------------------


def parse_xml(document: str | bytes) -> etree._Element | None:
    """Parse a CDA document into a tree, tolerating recoverable defects.

    Uses lxml's recovery mode with entity resolution and network access
    disabled. Returns None when nothing usable could be parsed.
    """
    if isinstance(document, str):
        document = document.encode("utf-8")
    parser = etree.XMLParser(
        recover=True,
        resolve_entities=False,
        no_network=True,
        remove_comments=True,
        huge_tree=False,
    )
    try:
        return etree.fromstring(document, parser)
    except etree.XMLSyntaxError:
        return None


def local_name(el: etree._Element) -> str:
    """Return an element's tag without its namespace."""
    if not isinstance(el.tag, str):
        return ""
    return etree.QName(el).localname


def get_title(root: etree._Element) -> str:
    """Extract the document title."""
    el = root.find(tag("title"))
    return el.text.strip() if el is not None and el.text else "Unknown"


def el_text(el: etree._Element | None) -> str:
    """Get text content of an element, stripping whitespace."""
    if el is None:
        return ""
    result = etree.tostring(el, method="text", encoding="unicode")
    return str(result).strip()


def template_ids(el: etree._Element) -> list[str]:
    """Return the roots of an element's own templateId children."""
    return [t.get("root", "") for t in el.findall(tag("templateId"))]


def has_template(el: etree._Element, roots: tuple[str, ...] | str) -> bool:
    if isinstance(roots, str):
        roots = (roots,)
    return any(r in roots for r in template_ids(el))


def coded(el: etree._Element | None) -> tuple[str, str, str]:
    """Decode (code, codeSystem, display) from a CD/CE element.

    The display falls back to originalText when displayName is absent.
    """
    if el is None:
        return "", "", ""
    display = el.get("displayName", "")
    if not display:
        display = el_text(el.find(tag("originalText")))
    return el.get("code", ""), el.get("codeSystem", ""), display


def time_value(el: etree._Element | None, bound: str | None = None) -> str:
    """Decode an effectiveTime-like element.

    With ``bound`` ("low"/"high") reads that child; otherwise reads the
    element's own value and falls back to its low bound.
    """
    if el is None:
        return ""
    if bound:
        child = el.find(tag(bound))
        return parse_hl7_timestamp(child.get("value", "")) if child is not None else ""
    if el.get("value"):
        return parse_hl7_timestamp(el.get("value", ""))
    return time_value(el, "low")
