"""Tests for chartbridge.core modules."""

from datetime import date, datetime, timedelta, timezone

from lxml import etree

from chartbridge.core.cda import (
    NS,
    coded,
    format_hl7_date,
    format_hl7_timestamp,
    get_title,
    local_name,
    new_root,
    parse_hl7_timestamp,
    parse_xml,
    serialize,
    sub,
    time_value,
    xml_escape,
)
from chartbridge.core.utils import (
    format_quantity,
    normalize_date_to_iso,
    parse_narrative_date,
    split_provider_name,
    try_parse_numeric,
)


# ---------------------------------------------------------------------------
# HL7 timestamp encoding
# ---------------------------------------------------------------------------


class TestFormatHl7Timestamp:
    def test_iso_datetime(self):
        assert format_hl7_timestamp("2024-03-05T14:30:00") == "20240305143000"

    def test_iso_date_only_is_midnight(self):
        assert format_hl7_timestamp("2024-03-05") == "20240305000000"

    def test_offset_converted_to_utc(self):
        assert format_hl7_timestamp("2024-03-05T14:30:00-07:00") == "20240305213000"

    def test_zulu_suffix(self):
        assert format_hl7_timestamp("2024-03-05T14:30:00Z") == "20240305143000"

    def test_datetime_object(self):
        assert format_hl7_timestamp(datetime(2024, 3, 5, 14, 30)) == "20240305143000"

    def test_aware_datetime_object(self):
        tz = timezone(timedelta(hours=2))
        assert format_hl7_timestamp(datetime(2024, 3, 5, 14, 30, tzinfo=tz)) == "20240305123000"

    def test_date_object(self):
        assert format_hl7_timestamp(date(2024, 3, 5)) == "20240305000000"

    def test_already_encoded_date(self):
        assert format_hl7_timestamp("20240305") == "20240305000000"

    def test_narrative_table_date(self):
        assert format_hl7_timestamp("01/15/2026") == "20260115000000"

    def test_empty(self):
        assert format_hl7_timestamp("") == ""
        assert format_hl7_timestamp(None) == ""

    def test_unparseable(self):
        assert format_hl7_timestamp("not a date") == ""

    def test_fixed_width(self):
        assert len(format_hl7_timestamp("1999-12-31T23:59:59")) == 14

    def test_format_hl7_date(self):
        assert format_hl7_date("1968-04-12") == "19680412"
        assert format_hl7_date("") == ""

    def test_year_month_keeps_precision(self):
        assert format_hl7_timestamp("2019-07") == "201907"
        assert format_hl7_date("2019-07") == "201907"

    def test_year_keeps_precision(self):
        assert format_hl7_timestamp("2019") == "2019"

    def test_partial_dates_round_trip(self):
        for value in ("2019", "2019-07"):
            assert parse_hl7_timestamp(format_hl7_timestamp(value)) == value

    def test_invalid_month_rejected(self):
        assert format_hl7_timestamp("2019-13") == ""


class TestParseHl7Timestamp:
    def test_full_precision(self):
        assert parse_hl7_timestamp("20240305143000") == "2024-03-05T14:30:00"

    def test_round_trip_to_the_second(self):
        original = "2024-03-05T14:30:00"
        assert parse_hl7_timestamp(format_hl7_timestamp(original)) == original

    def test_date_only(self):
        assert parse_hl7_timestamp("20240305") == "2024-03-05"

    def test_with_offset_shifted_to_utc(self):
        assert parse_hl7_timestamp("20240305143000-0700") == "2024-03-05T21:30:00"
        assert parse_hl7_timestamp("20240305143000+0100") == "2024-03-05T13:30:00"

    def test_fractional_seconds_dropped(self):
        assert parse_hl7_timestamp("20240305143000.123") == "2024-03-05T14:30:00"

    def test_hour_precision(self):
        assert parse_hl7_timestamp("2024030514") == "2024-03-05T14:00:00"

    def test_minute_precision(self):
        assert parse_hl7_timestamp("202403051430") == "2024-03-05T14:30:00"

    def test_year_month(self):
        assert parse_hl7_timestamp("202403") == "2024-03"

    def test_year_only(self):
        assert parse_hl7_timestamp("2024") == "2024"

    def test_invalid_month(self):
        assert parse_hl7_timestamp("202413") == ""

    def test_impossible_calendar_date(self):
        assert parse_hl7_timestamp("20240230") == ""

    def test_unsupported_length(self):
        assert parse_hl7_timestamp("12345") == ""

    def test_non_numeric(self):
        assert parse_hl7_timestamp("abc") == ""

    def test_empty(self):
        assert parse_hl7_timestamp("") == ""
        assert parse_hl7_timestamp(None) == ""


# ---------------------------------------------------------------------------
# Tree construction and serialization
# ---------------------------------------------------------------------------


class TestXmlEscape:
    def test_five_characters(self):
        assert xml_escape("<a & 'b'> \"c\"") == "&lt;a &amp; &apos;b&apos;&gt; &quot;c&quot;"

    def test_plain_text_unchanged(self):
        assert xml_escape("Hemoglobin A1c") == "Hemoglobin A1c"


class TestSerialize:
    def test_declaration_and_stylesheet(self):
        xml = serialize(new_root("ClinicalDocument"))
        lines = xml.splitlines()
        assert lines[0] == '<?xml version="1.0" encoding="UTF-8"?>'
        assert lines[1] == '<?xml-stylesheet type="text/xsl" href="CDA.xsl"?>'

    def test_no_stylesheet(self):
        xml = serialize(new_root("ClinicalDocument"), stylesheet=None)
        assert "xml-stylesheet" not in xml

    def test_root_namespaces(self):
        xml = serialize(new_root("ClinicalDocument"))
        assert 'xmlns="urn:hl7-org:v3"' in xml
        assert 'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"' in xml
        assert 'xmlns:sdtc="urn:hl7-org:sdtc"' in xml

    def test_text_escaped_once(self):
        root = new_root("ClinicalDocument")
        sub(root, "title", text="A & B")
        xml = serialize(root)
        assert "<title>A &amp; B</title>" in xml
        assert "&amp;amp;" not in xml

    def test_attribute_escaped(self):
        root = new_root("ClinicalDocument")
        sub(root, "code", {"displayName": 'say "hi" <now>'})
        xml = serialize(root)
        assert 'displayName="say &quot;hi&quot; &lt;now&gt;"' in xml

    def test_xsi_type_prefix(self):
        root = new_root("ClinicalDocument")
        sub(root, "value", {"xsi:type": "CD", "code": None})
        xml = serialize(root)
        assert '<value xsi:type="CD"/>' in xml

    def test_none_attributes_omitted(self):
        root = new_root("ClinicalDocument")
        el = sub(root, "templateId", {"root": "1.2.3", "extension": None})
        assert el.get("extension") is None
        assert el.get("root") == "1.2.3"

    def test_illegal_characters_stripped(self):
        root = new_root("ClinicalDocument")
        el = sub(root, "title", text="a\x01b")
        assert el.text == "ab"

    def test_indentation(self):
        root = new_root("ClinicalDocument")
        sub(sub(root, "component"), "structuredBody")
        xml = serialize(root)
        assert "\n  <component>\n    <structuredBody/>\n  </component>\n" in xml

    def test_output_reparses(self):
        root = new_root("ClinicalDocument")
        sub(root, "title", text="<Allergies & \"Reactions\">")
        reparsed = parse_xml(serialize(root))
        assert local_name(reparsed) == "ClinicalDocument"
        assert get_title(reparsed) == "<Allergies & \"Reactions\">"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _element(xml: str):
    return etree.fromstring(f'<root xmlns="{NS}">{xml}</root>'.encode())[0]


class TestParseXml:
    def test_parses_string_with_declaration(self):
        root = parse_xml('<?xml version="1.0" encoding="UTF-8"?><ClinicalDocument xmlns="urn:hl7-org:v3"/>')
        assert local_name(root) == "ClinicalDocument"

    def test_recovers_from_unclosed_tag(self):
        root = parse_xml('<ClinicalDocument xmlns="urn:hl7-org:v3"><title>Doc</title>')
        assert root is not None
        assert get_title(root) == "Doc"


class TestGetTitle:
    def test_missing_title(self):
        root = etree.fromstring(f'<ClinicalDocument xmlns="{NS}"/>'.encode())
        assert get_title(root) == "Unknown"


class TestCoded:
    def test_all_attributes(self):
        el = _element('<code code="7980" codeSystem="2.16.840.1.113883.6.88" displayName="Penicillin"/>')
        assert coded(el) == ("7980", "2.16.840.1.113883.6.88", "Penicillin")

    def test_original_text_fallback(self):
        el = _element('<code nullFlavor="NI"><originalText>Shellfish</originalText></code>')
        assert coded(el) == ("", "", "Shellfish")

    def test_none(self):
        assert coded(None) == ("", "", "")


class TestTimeValue:
    def test_own_value(self):
        el = _element('<effectiveTime value="20240305143000"/>')
        assert time_value(el) == "2024-03-05T14:30:00"

    def test_low_fallback(self):
        el = _element('<effectiveTime><low value="20240305"/><high value="20240310"/></effectiveTime>')
        assert time_value(el) == "2024-03-05"
        assert time_value(el, "high") == "2024-03-10"

    def test_null_flavor(self):
        el = _element('<effectiveTime><low nullFlavor="NI"/></effectiveTime>')
        assert time_value(el) == ""

    def test_missing(self):
        assert time_value(None) == ""


# ---------------------------------------------------------------------------
# utils
# ---------------------------------------------------------------------------


class TestNormalizeDateToIso:
    def test_iso_date(self):
        assert normalize_date_to_iso("2025-06-30") == "2025-06-30"

    def test_iso_datetime(self):
        assert normalize_date_to_iso("2025-06-30T13:25:00+00:00") == "2025-06-30"

    def test_yyyymmdd(self):
        assert normalize_date_to_iso("20211123") == "2021-11-23"

    def test_mm_dd_yyyy(self):
        assert normalize_date_to_iso("1/5/2026") == "2026-01-05"

    def test_narrative_date(self):
        assert normalize_date_to_iso("November 23rd, 2021 2:37pm") == "2021-11-23"

    def test_empty(self):
        assert normalize_date_to_iso("") == ""
        assert normalize_date_to_iso("   ") == ""


class TestParseNarrativeDate:
    def test_ordinal(self):
        assert parse_narrative_date("March 1st, 2024") == "2024-03-01"

    def test_unknown_month(self):
        assert parse_narrative_date("Smarch 1, 2024") == ""


class TestTryParseNumeric:
    def test_simple_float(self):
        assert try_parse_numeric("7.2") == 7.2

    def test_less_than(self):
        assert try_parse_numeric("<0.5") == 0.5

    def test_text(self):
        assert try_parse_numeric("positive") is None

    def test_empty(self):
        assert try_parse_numeric("") is None


class TestFormatQuantity:
    def test_whole_number(self):
        assert format_quantity(132.0) == "132"
        assert format_quantity(132) == "132"

    def test_fraction(self):
        assert format_quantity(7.2) == "7.2"

    def test_none(self):
        assert format_quantity(None) == ""


class TestSplitProviderName:
    def test_given_family(self):
        assert split_provider_name("Jane Smith") == ("Jane", "Smith")

    def test_compound_family(self):
        assert split_provider_name("Ana de la Cruz") == ("Ana", "de la Cruz")

    def test_single_word(self):
        assert split_provider_name("Begay") == ("Begay", "Begay")

    def test_empty(self):
        assert split_provider_name("") == ("", "")
