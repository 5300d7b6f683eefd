"""Extract structured records from a received C-CDA document.

The input is parsed into an lxml tree (recover mode, so minor defects in
third-party output are tolerated) and every category is located by its
section templateId. A missing section yields an empty list; a record with
neither code nor display is dropped; unreadable nested pieces (reactions,
activities) are skipped without losing the parent record.
"""

from __future__ import annotations

import logging

from lxml import etree

from chartbridge.ccda import templates as t
from chartbridge.ccda.sections import ACT_TO_MEDICATION_STATUS, CRITICALITY_BY_CODE
from chartbridge.ccda.templates import Category, SectionTemplate
from chartbridge.core.cda import (
    XSI_TYPE,
    coded,
    el_text,
    has_template,
    local_name,
    parse_hl7_timestamp,
    parse_xml,
    tag,
    time_value,
)
from chartbridge.core.utils import try_parse_numeric
from chartbridge.exceptions import ValidationError
from chartbridge.models import (
    Address,
    Allergy,
    CarePlan,
    CarePlanActivity,
    Encounter,
    Identifier,
    Immunization,
    Medication,
    ParsedDocument,
    Patient,
    Problem,
    Procedure,
    Reaction,
    Result,
    SmokingStatus,
    Vital,
)

logger = logging.getLogger(__name__)

MISSING_ROOT = "Invalid C-CDA document: missing ClinicalDocument root element"

_GENDERS = {"M": "male", "F": "female", "UN": "unknown"}


def _path(*names: str) -> str:
    return "/".join(tag(n) for n in names)


def _first(el: etree._Element | None, *names: str) -> etree._Element | None:
    if el is None:
        return None
    return el.find(_path(*names))


def _status(el: etree._Element | None) -> str:
    status = _first(el, "statusCode")
    return status.get("code", "") if status is not None else ""


def _record_id(el: etree._Element | None) -> str:
    """The extension of an element's first id, or its root when there is none."""
    ident = _first(el, "id")
    if ident is None:
        return ""
    return ident.get("extension") or ident.get("root", "")


def _find_template(el: etree._Element, name: str, roots: tuple[str, ...]) -> etree._Element | None:
    """First descendant ``name`` element carrying one of ``roots``, else the first ``name``."""
    candidates = list(el.iter(tag(name)))
    for c in candidates:
        if has_template(c, roots):
            return c
    return candidates[0] if candidates else None


# ---------------------------------------------------------------------------
# Section lookup
# ---------------------------------------------------------------------------


def find_section(doc: etree._Element, template: SectionTemplate) -> etree._Element | None:
    """Locate a section by its templateId.

    First looks for a ``<section>`` declaring one of the template roots
    itself; failing that, returns the nearest enclosing section or component
    of any templateId with a matching root.
    """
    roots = template.roots
    for section in doc.iter(tag("section")):
        if has_template(section, roots):
            return section
    for tid in doc.iter(tag("templateId")):
        if tid.get("root") not in roots:
            continue
        for ancestor in tid.iterancestors():
            if local_name(ancestor) in ("section", "component"):
                return ancestor
    return None


def section_entries(block: etree._Element) -> list[etree._Element]:
    if local_name(block) == "section":
        return block.findall(tag("entry"))
    return block.findall(tag("entry")) + block.findall(_path("section", "entry"))


# ---------------------------------------------------------------------------
# Demographics
# ---------------------------------------------------------------------------


def extract_patient(doc: etree._Element) -> Patient:
    patient = Patient()
    role = _first(doc, "recordTarget", "patientRole")
    if role is None:
        return patient

    for ident in role.findall(tag("id")):
        root, ext = ident.get("root", ""), ident.get("extension", "")
        if not ext:
            continue
        patient.identifiers.append(Identifier(system=root, value=ext))
        if root == t.PATIENT_ID_ROOT and not patient.id:
            patient.id = ext
        elif root == t.MRN_ROOT and not patient.mrn:
            patient.mrn = ext

    addr = _first(role, "addr")
    if addr is not None:
        address = Address(
            street=el_text(_first(addr, "streetAddressLine")),
            city=el_text(_first(addr, "city")),
            state=el_text(_first(addr, "state")),
            postal_code=el_text(_first(addr, "postalCode")),
            country=el_text(_first(addr, "country")),
        )
        if any((address.street, address.city, address.state, address.postal_code)):
            patient.address = address

    for telecom in role.findall(tag("telecom")):
        value = telecom.get("value", "")
        if value.startswith("tel:"):
            patient.phone = value[4:]
            break

    pat = _first(role, "patient")
    if pat is None:
        return patient

    name = _first(pat, "name")
    if name is not None:
        patient.given_name = " ".join(
            el_text(g) for g in name.findall(tag("given")) if el_text(g)
        )
        patient.family_name = el_text(_first(name, "family"))

    gender = _first(pat, "administrativeGenderCode")
    if gender is not None and gender.get("code"):
        patient.gender = _GENDERS.get(gender.get("code"), gender.get("code"))

    birth = _first(pat, "birthTime")
    if birth is not None:
        patient.birth_date = parse_hl7_timestamp(birth.get("value", ""))[:10]

    race = _first(pat, "raceCode")
    if race is not None:
        patient.race_code, _, patient.race = coded(race)
    ethnicity = _first(pat, "ethnicGroupCode")
    if ethnicity is not None:
        patient.ethnicity_code, _, patient.ethnicity = coded(ethnicity)

    lang = _first(pat, "languageCommunication", "languageCode")
    if lang is not None:
        patient.language = lang.get("code", "")

    return patient


# ---------------------------------------------------------------------------
# Entry decoders. Each returns None for entries with no usable coding.
# ---------------------------------------------------------------------------


def _reactions(obs: etree._Element) -> list[Reaction]:
    reactions = []
    for rel in obs.findall(tag("entryRelationship")):
        if rel.get("typeCode") != "MFST":
            continue
        robs = _first(rel, "observation")
        code, _, display = coded(_first(robs, "value"))
        if not code and not display:
            logger.debug("Skipping reaction without a coded value")
            continue
        reactions.append(Reaction(code=code, display_name=display))
    return reactions


def _criticality(obs: etree._Element) -> str:
    for rel in obs.findall(tag("entryRelationship")):
        cobs = _first(rel, "observation")
        if cobs is not None and has_template(cobs, t.CRITICALITY_OBSERVATION.root):
            value = _first(cobs, "value")
            if value is not None:
                return CRITICALITY_BY_CODE.get(value.get("code", ""), "")
    return ""


def decode_allergy(entry: etree._Element) -> Allergy | None:
    obs = _find_template(entry, "observation", (t.ALLERGY_OBSERVATION.root,))
    if obs is None:
        return None
    code, system, display = coded(_first(obs, "participant", "participantRole", "playingEntity", "code"))
    if not code and not display:
        code, system, display = coded(_first(obs, "value"))
    if not code and not display:
        return None

    concern = _first(entry, "act")
    status = _status(concern) or _status(obs)
    return Allergy(
        id=_record_id(obs),
        code=code,
        code_system=system,
        display_name=display,
        status=("active" if status == "active" else "inactive") if status else "",
        criticality=_criticality(obs),
        onset_date=time_value(_first(obs, "effectiveTime")),
        reactions=_reactions(obs),
    )


def decode_medication(entry: etree._Element) -> Medication | None:
    sa = _find_template(entry, "substanceAdministration", (t.MEDICATION_ACTIVITY.root,))
    if sa is None:
        return None
    code, system, display = coded(
        _first(sa, "consumable", "manufacturedProduct", "manufacturedMaterial", "code")
    )
    if not code and not display:
        return None
    status = _status(sa)
    period = _first(sa, "effectiveTime")
    route_code, _, route = coded(_first(sa, "routeCode"))
    return Medication(
        id=_record_id(sa),
        code=code,
        code_system=system,
        display_name=display,
        status=ACT_TO_MEDICATION_STATUS.get(status, status),
        dosage=el_text(_first(sa, "text")),
        route_code=route_code,
        route=route,
        start_date=time_value(period),
        end_date=time_value(period, "high"),
    )


def decode_problem(entry: etree._Element) -> Problem | None:
    obs = _find_template(entry, "observation", (t.PROBLEM_OBSERVATION.root,))
    if obs is None:
        return None
    code, system, display = coded(_first(obs, "value"))
    if not code and not display:
        return None
    status = _status(_first(entry, "act")) or _status(obs)
    period = _first(obs, "effectiveTime")
    return Problem(
        id=_record_id(obs),
        code=code,
        code_system=system,
        display_name=display,
        status=("active" if status == "active" else "resolved") if status else "",
        onset_date=time_value(period),
        resolved_date=time_value(period, "high"),
    )


def decode_procedure(entry: etree._Element) -> Procedure | None:
    proc = next((c for c in entry if local_name(c) in ("procedure", "act", "observation")), None)
    if proc is None:
        return None
    code, system, display = coded(_first(proc, "code"))
    if not code and not display:
        return None
    return Procedure(
        id=_record_id(proc),
        code=code,
        code_system=system,
        display_name=display,
        status=_status(proc),
        date=time_value(_first(proc, "effectiveTime")),
    )


def _observation_value(obs: etree._Element) -> tuple[str, str, float | None]:
    """Decode an observation value as (text, unit, numeric) by its xsi:type.

    Physical quantities (PQ) carry a numeric value, and so does string text
    that holds a qualified number such as "<0.5".
    """
    value = _first(obs, "value")
    if value is None or value.get("nullFlavor"):
        return "", "", None
    vtype = value.get(XSI_TYPE, "").split(":")[-1].upper()
    if vtype == "PQ":
        text = value.get("value", "")
        return text, value.get("unit", ""), try_parse_numeric(text)
    if vtype in ("CD", "CE", "CO", "CV"):
        code, _, display = coded(value)
        return display or code, "", None
    text = el_text(value) or value.get("value", "")
    if vtype == "ST":
        return text, "", try_parse_numeric(text)
    return text, "", None


def _observations(entry: etree._Element) -> list[etree._Element]:
    """Component observations of an organizer entry, or a bare observation entry.

    Observations nested under entryRelationship (comments, reference ranges)
    belong to their parent and are not returned.
    """
    organizer = _first(entry, "organizer")
    if organizer is not None:
        return organizer.findall(_path("component", "observation"))
    return entry.findall(_path("observation"))


def decode_results(entry: etree._Element) -> list[Result]:
    results = []
    for obs in _observations(entry):
        code, system, display = coded(_first(obs, "code"))
        if not code and not display:
            continue
        value, unit, numeric = _observation_value(obs)
        interp_code, _, interp = coded(_first(obs, "interpretationCode"))
        results.append(
            Result(
                id=_record_id(obs),
                code=code,
                code_system=system,
                display_name=display,
                value=value,
                value_numeric=numeric,
                unit=unit,
                date=time_value(_first(obs, "effectiveTime")),
                interpretation_code=interp_code,
                interpretation=interp,
                reference_range=el_text(_first(obs, "referenceRange", "observationRange", "text")),
            )
        )
    return results


def decode_vitals(entry: etree._Element) -> list[Vital]:
    vitals = []
    for obs in _observations(entry):
        code, system, display = coded(_first(obs, "code"))
        if not code and not display:
            continue
        _, unit, numeric = _observation_value(obs)
        vitals.append(
            Vital(
                id=_record_id(obs),
                code=code,
                code_system=system,
                display_name=display,
                value=numeric,
                unit=unit,
                date=time_value(_first(obs, "effectiveTime")),
            )
        )
    return vitals


def decode_immunization(entry: etree._Element) -> Immunization | None:
    sa = _find_template(entry, "substanceAdministration", (t.IMMUNIZATION_ACTIVITY.root,))
    if sa is None:
        return None
    material = _first(sa, "consumable", "manufacturedProduct", "manufacturedMaterial")
    code, system, display = coded(_first(material, "code"))
    if not code and not display:
        return None
    return Immunization(
        id=_record_id(sa),
        code=code,
        code_system=system,
        display_name=display,
        date=time_value(_first(sa, "effectiveTime")),
        status="not-done" if sa.get("negationInd") == "true" else "completed",
        lot_number=el_text(_first(material, "lotNumberText")),
    )


def decode_care_plan(entry: etree._Element) -> CarePlan | None:
    act = next((c for c in entry if isinstance(c.tag, str)), None)
    if act is None:
        return None
    title = el_text(_first(act, "code", "originalText"))
    description = el_text(_first(act, "text"))
    if not title and not description:
        return None

    activities = []
    for rel in act.findall(tag("entryRelationship")):
        inner = next((c for c in rel if isinstance(c.tag, str)), None)
        if inner is None:
            logger.debug("Skipping empty care plan activity")
            continue
        activities.append(
            CarePlanActivity(description=el_text(_first(inner, "text")), status=_status(inner))
        )

    return CarePlan(
        id=_record_id(act),
        title=title,
        description=description,
        status="active" if _status(act) == "active" else "completed",
        activities=activities,
    )


def decode_smoking_status(entry: etree._Element) -> SmokingStatus | None:
    obs = _first(entry, "observation")
    if obs is None:
        return None
    obs_code = _first(obs, "code")
    is_smoking = has_template(obs, t.SMOKING_STATUS.root) or (
        obs_code is not None and obs_code.get("code") == t.SMOKING_STATUS_CODE[0]
    )
    if not is_smoking:
        return None
    code, system, display = coded(_first(obs, "value"))
    if not code and not display:
        return None
    return SmokingStatus(
        id=_record_id(obs),
        code=code,
        code_system=system,
        display_name=display,
        date=time_value(_first(obs, "effectiveTime")),
    )


def decode_encounter(entry: etree._Element) -> Encounter | None:
    enc = _first(entry, "encounter")
    if enc is None:
        return None
    code, system, display = coded(_first(enc, "code"))
    if not code and not display:
        return None
    period = _first(enc, "effectiveTime")
    return Encounter(
        id=_record_id(enc),
        code=code,
        code_system=system,
        display_name=display,
        status=_status(enc),
        start_date=time_value(period),
        end_date=time_value(period, "high"),
        performer=el_text(_first(enc, "performer", "assignedEntity", "assignedPerson", "name")),
    )


# Decoders returning one record (or None) per entry
_SINGLE_DECODERS = {
    Category.ALLERGIES: decode_allergy,
    Category.MEDICATIONS: decode_medication,
    Category.PROBLEMS: decode_problem,
    Category.PROCEDURES: decode_procedure,
    Category.IMMUNIZATIONS: decode_immunization,
    Category.PLAN_OF_CARE: decode_care_plan,
    Category.SOCIAL_HISTORY: decode_smoking_status,
    Category.ENCOUNTERS: decode_encounter,
}

# Two-level categories: organizer -> component observations
_MULTI_DECODERS = {
    Category.RESULTS: decode_results,
    Category.VITALS: decode_vitals,
}


def extract_category(doc: etree._Element, category: Category) -> list:
    """Decode every entry of one category's section. Absent section -> []."""
    section = find_section(doc, t.SECTIONS[category])
    if section is None:
        return []
    records: list = []
    for entry in section_entries(section):
        if category in _MULTI_DECODERS:
            records.extend(_MULTI_DECODERS[category](entry))
            continue
        record = _SINGLE_DECODERS[category](entry)
        if record is not None:
            records.append(record)
    return records


def _document_element(document: str | bytes) -> etree._Element:
    if not document:
        raise ValidationError(MISSING_ROOT)
    marker = b"ClinicalDocument" if isinstance(document, bytes) else "ClinicalDocument"
    if marker not in document:
        raise ValidationError(MISSING_ROOT)
    root = parse_xml(document)
    if root is None:
        raise ValidationError(MISSING_ROOT)
    if local_name(root) == "ClinicalDocument":
        return root
    for el in root.iter():
        if local_name(el) == "ClinicalDocument":
            return el
    raise ValidationError(MISSING_ROOT)


def extract(document: str | bytes) -> ParsedDocument:
    """Parse a C-CDA document into a ParsedDocument.

    Raises ValidationError when the input is not a ClinicalDocument.
    """
    doc = _document_element(document)
    parsed = ParsedDocument(patient=extract_patient(doc))
    for category in Category:
        setattr(parsed, category.value, extract_category(doc, category))
    logger.info("Parsed C-CDA document: %s", parsed.counts())
    return parsed
